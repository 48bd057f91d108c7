"""
CLI tests — commands end to end through click's test runner.
"""
import json
import os
import subprocess
import sys

from click.testing import CliRunner

from infraplan.cli import cli

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
TF = os.path.join(FIXTURES, "azure_network.tf")
MANIFEST = os.path.join(FIXTURES, "network.yaml")


def test_module_execution():
    """'python -m infraplan' works."""
    result = subprocess.run(
        [sys.executable, "-m", "infraplan", "--help"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    assert "infraplan" in result.stdout


class TestValidate:
    def setup_method(self):
        self.runner = CliRunner()

    def test_clean(self):
        result = self.runner.invoke(cli, ["validate", TF])
        assert result.exit_code == 0, result.output
        assert "Configuration is valid." in result.output

    def test_cycle_exits_1(self):
        result = self.runner.invoke(cli, ["--no-color", "validate", os.path.join(FIXTURES, "cyclic.tf")])
        assert result.exit_code == 1
        assert "D-001" in result.output

    def test_sarif_file(self, tmp_path):
        out = tmp_path / "report.sarif"
        result = self.runner.invoke(cli, [
            "validate", os.path.join(FIXTURES, "unresolved.tf"), "--format", "sarif", "--output", str(out),
        ])
        assert result.exit_code == 1
        sarif = json.loads(out.read_text(encoding="utf-8"))
        assert sarif["runs"][0]["results"][0]["ruleId"] == "IP-unresolved-reference"

    def test_missing_path_exits_2(self, tmp_path):
        result = self.runner.invoke(cli, ["validate", str(tmp_path / "nope")])
        assert result.exit_code == 2
        assert "does not exist" in result.output


class TestGraph:
    def setup_method(self):
        self.runner = CliRunner()

    def test_mermaid(self):
        result = self.runner.invoke(cli, ["graph", MANIFEST])
        assert result.exit_code == 0, result.output
        assert "flowchart LR" in result.output
        assert "local_subnet_app --> local_network_main" in result.output

    def test_json_file(self, tmp_path):
        out = tmp_path / "graph.json"
        result = self.runner.invoke(cli, ["graph", MANIFEST, "--format", "json", "-o", str(out)])
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["levels"][0] == ["local_network.main"]

    def test_cycle_exits_2(self):
        result = self.runner.invoke(cli, ["graph", os.path.join(FIXTURES, "cyclic.tf")])
        assert result.exit_code == 2
        assert "cycle" in result.output


class TestPlanApply:
    def setup_method(self):
        self.runner = CliRunner()

    def _invoke(self, tmp_path, *args, **kwargs):
        return self.runner.invoke(cli, ["--no-color", "--state", str(tmp_path / "state.json"), *args],
                                  **kwargs)

    def test_plan_markdown_file(self, tmp_path):
        out = tmp_path / "plan.md"
        result = self._invoke(tmp_path, "plan", TF, "--output", str(out))
        assert result.exit_code == 0, result.output
        with open(out, "rb") as f:
            content = f.read()
        assert b"\r\n" not in content
        text = content.decode("utf-8")
        assert "7 to create" in text
        assert "demo-rg" in text

    def test_plan_json_with_var(self, tmp_path):
        out = tmp_path / "plan.json"
        result = self._invoke(tmp_path, "plan", MANIFEST, "--var", "prefix=prod",
                              "--format", "json", "--output", str(out))
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        names = [c["after"]["name"] for c in data["plan"]["changes"]]
        assert "prod-net" in names

    def test_plan_exit_code(self, tmp_path):
        result = self._invoke(tmp_path, "plan", MANIFEST, "--summary", "--exit-code")
        assert result.exit_code == 1

    def test_apply_then_no_changes(self, tmp_path):
        result = self._invoke(tmp_path, "apply", MANIFEST, "--auto-approve")
        assert result.exit_code == 0, result.output
        assert "3 applied" in result.output

        result = self._invoke(tmp_path, "plan", MANIFEST, "--summary", "--exit-code")
        assert result.exit_code == 0, result.output
        assert "No changes." in result.output

        result = self._invoke(tmp_path, "state", "list")
        assert result.output.split() == ["local_network.main", "local_subnet.app", "local_vm.web"]

    def test_saved_plan(self, tmp_path):
        plan_file = tmp_path / "plan.json"
        result = self._invoke(tmp_path, "plan", MANIFEST, "--summary", "--out", str(plan_file))
        assert result.exit_code == 0, result.output
        result = self._invoke(tmp_path, "apply", "--plan", str(plan_file), "--auto-approve")
        assert result.exit_code == 0, result.output

        # the state moved on, so the same plan is now stale
        result = self._invoke(tmp_path, "apply", "--plan", str(plan_file), "--auto-approve")
        assert result.exit_code == 2
        assert "plan again" in result.output

    def test_apply_cancelled(self, tmp_path):
        result = self._invoke(tmp_path, "apply", MANIFEST, input="n\n")
        assert result.exit_code == 1
        assert "cancelled" in result.output
        assert not (tmp_path / "state.json").exists()

    def test_destroy(self, tmp_path):
        self._invoke(tmp_path, "apply", MANIFEST, "--auto-approve")
        result = self._invoke(tmp_path, "destroy", "--auto-approve")
        assert result.exit_code == 0, result.output
        result = self._invoke(tmp_path, "state", "list")
        assert result.output.strip() == ""

    def test_prevent_destroy_exits_2(self, tmp_path):
        result = self._invoke(tmp_path, "apply", TF, "--auto-approve")
        assert result.exit_code == 0, result.output
        result = self._invoke(tmp_path, "destroy", TF, "--auto-approve")
        assert result.exit_code == 2
        assert "prevent_destroy" in result.output

    def test_destroy_without_configuration_keeps_protection(self, tmp_path):
        result = self._invoke(tmp_path, "apply", TF, "--auto-approve")
        assert result.exit_code == 0, result.output
        result = self._invoke(tmp_path, "destroy", "--auto-approve")
        assert result.exit_code == 2
        assert "azurerm_resource_group.main" in result.output
        result = self._invoke(tmp_path, "plan", "--destroy", "--summary")
        assert result.exit_code == 2

    def test_broken_manifest_is_not_planned_away(self, tmp_path):
        manifest = tmp_path / "network.yaml"
        manifest.write_text(
            "kind: infraplan/v1\n"
            "resources:\n"
            "  - type: local_network\n"
            "    name: main\n"
            "    attributes: {name: net}\n"
        )
        result = self._invoke(tmp_path, "apply", str(manifest), "--auto-approve")
        assert result.exit_code == 0, result.output

        manifest.write_text(manifest.read_text().replace("{name: net}", "{name: net"))
        result = self._invoke(tmp_path, "plan", str(manifest), "--summary")
        assert result.exit_code == 2
        assert "delete" not in result.output

    def test_validate_flags_depends_on_self(self, tmp_path):
        f = tmp_path / "main.tf"
        f.write_text(
            'resource "local_network" "main" {\n'
            '  name = "net"\n'
            '  depends_on = [local_network.main]\n'
            '}\n'
        )
        result = self._invoke(tmp_path, "validate", str(f), "--format", "json")
        assert result.exit_code == 1
        assert "self-reference" in result.output

    def test_unresolved_reference_exits_2(self, tmp_path):
        result = self._invoke(tmp_path, "plan", os.path.join(FIXTURES, "unresolved.tf"))
        assert result.exit_code == 2
        assert "local_subnet.missing" in result.output

    def test_output(self, tmp_path):
        self._invoke(tmp_path, "apply", MANIFEST, "--auto-approve")
        result = self._invoke(tmp_path, "output", MANIFEST)
        assert result.exit_code == 0, result.output
        start = result.output.index("{")
        data = json.loads(result.output[start:])
        assert data["vm_id"].startswith("/local/local_vm/web/")


class TestStateCommands:
    def setup_method(self):
        self.runner = CliRunner()

    def _invoke(self, tmp_path, *args):
        return self.runner.invoke(cli, ["--no-color", "--state", str(tmp_path / "state.json"), *args])

    def test_show_and_rm(self, tmp_path):
        self._invoke(tmp_path, "apply", MANIFEST, "--auto-approve")

        result = self._invoke(tmp_path, "state", "show", "local_vm.web")
        assert result.exit_code == 0, result.output
        record = json.loads(result.output)
        assert record["attributes"]["name"] == "demo-web"

        result = self._invoke(tmp_path, "state", "rm", "local_vm.web")
        assert result.exit_code == 0, result.output
        result = self._invoke(tmp_path, "state", "show", "local_vm.web")
        assert result.exit_code == 2

    def test_rm_unknown_address(self, tmp_path):
        result = self._invoke(tmp_path, "state", "rm", "local_vm.ghost")
        assert result.exit_code == 2
        assert "not in state" in result.output

    def test_lock_and_force_unlock(self, tmp_path):
        lock = tmp_path / "state.json.lock"
        lock.write_text(json.dumps({"pid": 4242, "host": "ci"}))

        result = self._invoke(tmp_path, "apply", MANIFEST, "--auto-approve")
        assert result.exit_code == 2
        assert "locked" in result.output

        result = self._invoke(tmp_path, "force-unlock")
        assert result.exit_code == 0
        assert "4242" in result.output
        assert not lock.exists()
