"""
infraplan CLI entry point.
"""
import functools
import json
import logging
import os
import sys
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from infraplan import __version__, config, loader, variables
from infraplan.errors import InfraplanError, StateError
from infraplan.executor import Executor, OperationResult, Outcome
from infraplan.expressions import encode_unknowns, substitute
from infraplan.graph import ResourceGraph
from infraplan.models.change import Plan
from infraplan.models.diagnostic import Diagnostic
from infraplan.planner import Planner
from infraplan.providers import LocalProvider, ProviderRegistry
from infraplan.providers.base import load_entry_points
from infraplan.reporters import html_reporter, json_reporter, markdown, sarif_reporter
from infraplan.state import StateStore
from infraplan.validators import engine

logger = logging.getLogger("infraplan")

_BANNER = r"""
  _        __                 _
 (_)_ __  / _|_ __ __ _ _ __ | | __ _ _ __
 | | '_ \| |_| '__/ _` | '_ \| |/ _` | '_ \
 | | | | |  _| | | (_| | |_) | | (_| | | | |
 |_|_| |_|_| |_|  \__,_| .__/|_|\__,_|_| |_|
                       |_|
"""

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "bold magenta",
    "delete": "red",
    "no-op": "dim",
}

_SEVERITY_COLORS = {
    "ERROR": "bold red",
    "WARNING": "yellow",
    "INFO": "dim",
}

_OUTCOME_COLORS = {
    "applied": "green",
    "failed": "bold red",
    "skipped": "yellow",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold blue]{_BANNER}[/bold blue]")
    c.print(f"  [dim]declarative infrastructure reconciliation[/dim]   [dim]v{__version__}[/dim]\n")


def _setup_logging(verbose: int, no_color: bool) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    handler = RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False)
    root = logging.getLogger("infraplan")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False


def _guard(fn):
    """Turn InfraplanError into a red message and exit code 2."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except InfraplanError as exc:
            ctx = click.get_current_context()
            Console(stderr=True, no_color=ctx.obj.get("no_color", False)).print(
                f"[red]Error:[/red] {escape(str(exc))}", soft_wrap=True
            )
            sys.exit(2)

    return wrapper


# ------------------------------------------------------------------ helpers

def _settings(ctx: click.Context) -> config.Settings:
    settings = ctx.obj.get("settings")
    if settings is None:
        settings = config.load(ctx.obj.get("config_path"))
        if ctx.obj.get("state_path"):
            settings.state_path = ctx.obj["state_path"]
        ctx.obj["settings"] = settings
    return settings


def _store(settings: config.Settings) -> StateStore:
    return StateStore(settings.state_path, namespace=settings.namespace)


def _registry(settings: config.Settings) -> ProviderRegistry:
    local_path = settings.local_provider_path or os.path.join(
        os.path.dirname(os.path.abspath(settings.state_path)), "local-cloud.json"
    )
    registry = ProviderRegistry(default=LocalProvider(local_path))
    load_entry_points(registry)
    return registry


def _load_config(settings: config.Settings, paths: Tuple[str, ...], var_files, var_pairs):
    return loader.load(
        paths,
        var_files=list(var_files),
        assignments=variables.parse_assignments(var_pairs),
        namespace=settings.namespace,
    )


def _write_report(stderr: Console, content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _print_plan_table(plan: Plan, no_color: bool) -> None:
    tbl = Table(title="Execution Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=9)
    tbl.add_column("Resource", width=45)
    tbl.add_column("Reason")

    for i, c in enumerate(plan.changes, 1):
        color = _ACTION_COLORS.get(c.action.value, "") if not no_color else ""
        tbl.add_row(
            str(i),
            f"[{color}]{c.action.value}[/{color}]" if color else c.action.value,
            c.address,
            c.reason[:80] + "…" if len(c.reason) > 80 else c.reason,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_diagnostics_table(diagnostics: List[Diagnostic], no_color: bool) -> None:
    tbl = Table(title="Validation", show_header=True, header_style="bold")
    tbl.add_column("ID", style="dim", width=7)
    tbl.add_column("Severity", width=9)
    tbl.add_column("Resource", width=40)
    tbl.add_column("Message")

    for d in diagnostics:
        color = _SEVERITY_COLORS.get(d.severity.value, "") if not no_color else ""
        tbl.add_row(
            d.diagnostic_id,
            f"[{color}]{d.severity.value}[/{color}]" if color else d.severity.value,
            d.address,
            d.message,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _plan_summary(plan: Plan) -> str:
    counts = plan.summary()
    return ", ".join(
        f"[{_ACTION_COLORS[a]}]{counts[a]} to {a}[/{_ACTION_COLORS[a]}]"
        for a in ("create", "update", "replace", "delete")
        if counts[a]
    )


def _result_printer(stderr: Console):
    def _print(res: OperationResult) -> None:
        color = _OUTCOME_COLORS.get(res.outcome.value, "")
        line = f"[{color}]{res.outcome.value:>8}[/{color}]  {res.operation:<7} {res.address}"
        if res.outcome == Outcome.APPLIED:
            line += f" [dim]({res.duration:.1f}s"
            line += f", {res.attempts} attempts)[/dim]" if res.attempts > 1 else ")[/dim]"
        elif res.error:
            line += f"  [dim]{escape(res.error)}[/dim]"
        stderr.print(line)
    return _print


def _run_apply(ctx: click.Context, plan: Plan, auto_approve: bool, stderr: Console) -> None:
    settings = _settings(ctx)
    no_color = ctx.obj.get("no_color", False)

    if not plan.has_changes:
        stderr.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        sys.exit(0)

    _print_plan_table(plan, no_color)
    stderr.print(f"Plan: {_plan_summary(plan)}.")

    if not auto_approve and not click.confirm("Apply these changes?", default=False, err=True):
        stderr.print("[yellow]Apply cancelled.[/yellow]")
        sys.exit(1)

    executor = Executor(_registry(settings), _store(settings), settings,
                        callback=_result_printer(stderr))
    result = executor.apply(plan)
    counts = result.summary()
    stderr.print(
        f"Apply finished: [green]{counts['applied']} applied[/green], "
        f"[red]{counts['failed']} failed[/red], [yellow]{counts['skipped']} skipped[/yellow]."
    )
    sys.exit(0 if result.success else 1)


# ------------------------------------------------------------------ commands

_path_args = click.argument("paths", nargs=-1, type=click.Path())
_var_option = click.option(
    "--var", "var_pairs", multiple=True, metavar="NAME=VALUE",
    help="Set an input variable (repeatable).",
)
_var_file_option = click.option(
    "--var-file", "var_files", multiple=True, type=click.Path(exists=True),
    help="YAML file with variable values (repeatable).",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Settings file (default: ./infraplan.yaml when present).")
@click.option("--state", "state_path", type=click.Path(), default=None,
              help="State file (overrides the settings file).")
@click.option("--verbose", "-v", count=True, help="More logging (-vv for debug).")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.pass_context
def cli(ctx, config_path, state_path, verbose, no_color):
    """infraplan — plan and apply declarative infrastructure."""
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, state_path=state_path, no_color=no_color)
    _setup_logging(verbose, no_color)


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.option(
    "--format", "output_format",
    type=click.Choice(["text", "json", "sarif"], case_sensitive=False),
    default="text", show_default=True, help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
@click.pass_context
@_guard
def validate(ctx, paths, var_pairs, var_files, output_format, output):
    """
    Check configuration files for broken references, cycles and rule violations.

    Exits 1 when any ERROR diagnostic is found.
    """
    if not paths:
        raise click.UsageError("at least one PATH is required")
    no_color = ctx.obj.get("no_color", False)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(ctx)

    configuration = _load_config(settings, paths, var_files, var_pairs)
    stderr.print(f"Found [bold]{len(configuration.resources)}[/bold] resources.")
    diagnostics = engine.run(configuration.resources, settings)

    fmt = output_format.lower()
    if fmt == "json":
        _write_report(stderr, json.dumps([d.to_dict() for d in diagnostics], indent=2), output)
    elif fmt == "sarif":
        _write_report(stderr, sarif_reporter.build_report(diagnostics, ", ".join(paths)), output)
    elif diagnostics:
        _print_diagnostics_table(diagnostics, no_color)
    else:
        stderr.print("[green]Configuration is valid.[/green]")

    sys.exit(1 if engine.has_errors(diagnostics) else 0)


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.option(
    "--format", "output_format",
    type=click.Choice(["mermaid", "dot", "json"], case_sensitive=False),
    default="mermaid", show_default=True, help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the graph to this file (default: stdout).")
@click.pass_context
@_guard
def graph(ctx, paths, var_pairs, var_files, output_format, output):
    """Print the resource dependency graph."""
    if not paths:
        raise click.UsageError("at least one PATH is required")
    stderr = Console(stderr=True, no_color=ctx.obj.get("no_color", False))
    settings = _settings(ctx)
    resource_graph = ResourceGraph.build(
        _load_config(settings, paths, var_files, var_pairs).resources
    )

    fmt = output_format.lower()
    if fmt == "dot":
        content = resource_graph.to_dot()
    elif fmt == "json":
        content = json.dumps(resource_graph.to_dict(), indent=2)
    else:
        content = resource_graph.to_mermaid()
    _write_report(stderr, content, output)


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.option(
    "--format", "output_format",
    type=click.Choice(["markdown", "json", "html"], case_sensitive=False),
    default="markdown", show_default=True, help="Report format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
@click.option("--out", "plan_out", type=click.Path(), default=None,
              help="Save the plan so that 'apply --plan' can carry it out unchanged.")
@click.option("--destroy", is_flag=True, default=False, help="Plan the removal of everything in state.")
@click.option("--refresh", is_flag=True, default=False,
              help="Read recorded resources back from their providers first.")
@click.option("--summary", is_flag=True, default=False,
              help="Print the terminal summary table only, no report.")
@click.option("--ascii", is_flag=True, default=False, help="Use ASCII-only action markers (no emojis).")
@click.option("--exit-code", is_flag=True, default=False,
              help="Exit with code 1 when changes are pending (for CI gates).")
@click.pass_context
@_guard
def plan(ctx, paths, var_pairs, var_files, output_format, output, plan_out, destroy, refresh,
         summary, ascii, exit_code):
    """
    Compare configuration with state and show what apply would change.

    PATHS can be files or directories; multiple values accepted.
    """
    if not paths and not destroy:
        raise click.UsageError("at least one PATH is required")
    no_color = ctx.obj.get("no_color", False)
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(ctx)
    store = _store(settings)
    source_label = ", ".join(paths) or store.path

    # 1. Parse and build the graph
    with stderr.status("[bold]Reading configuration…"):
        configuration = _load_config(settings, paths, var_files, var_pairs)
        resource_graph = ResourceGraph.build(configuration.resources)
    stderr.print(f"Found [bold]{len(resource_graph)}[/bold] resources.")

    # 2. Refresh and diff
    if refresh:
        with stderr.status("[bold]Refreshing state…"):
            outcome = Executor(_registry(settings), store, settings).refresh()
        if outcome.drifted:
            stderr.print(f"[yellow]Drift:[/yellow] {len(outcome.updated)} changed, "
                         f"{len(outcome.removed)} gone.")

    the_plan = Planner(settings).plan(resource_graph, store.load(), destroy=destroy)
    if the_plan.has_changes:
        stderr.print(f"Plan: {_plan_summary(the_plan)}.")
    else:
        stderr.print("[green]No changes.[/green] Infrastructure matches the configuration.")

    # 3. Terminal table when writing to a file, or when --summary is requested
    if summary or output:
        _print_plan_table(the_plan, no_color)

    # 4. Report
    if not summary:
        fmt = output_format.lower()
        if fmt == "json":
            report_content = json_reporter.build_report(the_plan, source_label)
        elif fmt == "html":
            report_content = html_reporter.build_report(the_plan, source_label)
        else:
            report_content = markdown.build_report(the_plan, source_label, ascii_mode=ascii)
        _write_report(stderr, report_content, output)

    if plan_out:
        with open(plan_out, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(the_plan.to_dict(), fh, indent=2)
        stderr.print(f"Plan saved to [bold]{plan_out}[/bold]")

    # 5. CI gate
    if exit_code and the_plan.has_changes:
        sys.exit(1)
    sys.exit(0)


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.option("--plan", "plan_file", type=click.Path(exists=True), default=None,
              help="Apply a plan saved with 'plan --out'.")
@click.option("--auto-approve", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--parallelism", type=click.IntRange(min=1), default=None,
              help="Maximum concurrent operations.")
@click.pass_context
@_guard
def apply(ctx, paths, var_pairs, var_files, plan_file, auto_approve, parallelism):
    """Make infrastructure match the configuration."""
    no_color = ctx.obj.get("no_color", False)
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(ctx)
    if parallelism:
        settings.parallelism = parallelism

    if plan_file:
        if paths:
            raise click.UsageError("give either PATHS or --plan, not both")
        try:
            with open(plan_file, encoding="utf-8") as fh:
                the_plan = Plan.from_dict(json.load(fh))
        except (OSError, ValueError, KeyError) as exc:
            raise StateError(f"cannot read plan file {plan_file}: {exc}")
    else:
        if not paths:
            raise click.UsageError("at least one PATH (or --plan) is required")
        configuration = _load_config(settings, paths, var_files, var_pairs)
        resource_graph = ResourceGraph.build(configuration.resources)
        the_plan = Planner(settings).plan(resource_graph, _store(settings).load())

    _run_apply(ctx, the_plan, auto_approve, stderr)


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.option("--auto-approve", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
@_guard
def destroy(ctx, paths, var_pairs, var_files, auto_approve):
    """
    Delete everything recorded in state.

    PATHS are optional; when given, lifecycle.prevent_destroy is honoured.
    """
    no_color = ctx.obj.get("no_color", False)
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(ctx)
    resources = _load_config(settings, paths, var_files, var_pairs).resources if paths else []
    the_plan = Planner(settings).plan(ResourceGraph.build(resources), _store(settings).load(),
                                      destroy=True)
    _run_apply(ctx, the_plan, auto_approve, stderr)


@cli.command()
@click.pass_context
@_guard
def refresh(ctx):
    """Update state from what providers report, detecting drift."""
    stderr = Console(stderr=True, no_color=ctx.obj.get("no_color", False))
    settings = _settings(ctx)
    outcome = Executor(_registry(settings), _store(settings), settings).refresh()
    for address in outcome.updated:
        stderr.print(f"[yellow]drifted[/yellow]  {address}")
    for address in outcome.removed:
        stderr.print(f"[red]gone[/red]     {address}")
    stderr.print(f"Refreshed {len(outcome.updated) + len(outcome.removed) + len(outcome.unchanged)} "
                 f"resource(s); {len(outcome.unchanged)} unchanged.")


@cli.command()
@_path_args
@_var_option
@_var_file_option
@click.pass_context
@_guard
def output(ctx, paths, var_pairs, var_files):
    """Print configuration outputs resolved against state, as JSON."""
    if not paths:
        raise click.UsageError("at least one PATH is required")
    settings = _settings(ctx)
    configuration = _load_config(settings, paths, var_files, var_pairs)
    state = _store(settings).load()

    def lookup(resource_type, name, attribute):
        record = state.get(f"{resource_type}.{name}")
        return None if record is None else record.value(attribute)

    values = {name: substitute(expr, lookup) for name, expr in sorted(configuration.outputs.items())}
    click.echo(json.dumps(encode_unknowns(values), indent=2))


@cli.group()
def state():
    """Inspect and edit the state file."""


@state.command("list")
@click.pass_context
@_guard
def state_list(ctx):
    """List resource addresses recorded in state."""
    doc = _store(_settings(ctx)).load()
    for address in doc.addresses():
        click.echo(address)


@state.command("show")
@click.argument("address")
@click.pass_context
@_guard
def state_show(ctx, address):
    """Show one state record as JSON."""
    doc = _store(_settings(ctx)).load()
    record = doc.get(address)
    if record is None:
        raise StateError(f"'{address}' is not in state")
    click.echo(json.dumps(record.to_dict(), indent=2))


@state.command("rm")
@click.argument("addresses", nargs=-1, required=True)
@click.pass_context
@_guard
def state_rm(ctx, addresses):
    """Forget resources without deleting them."""
    settings = _settings(ctx)
    store = _store(settings)
    stderr = Console(stderr=True, no_color=ctx.obj.get("no_color", False))
    with store.lock(settings.lock_timeout):
        doc = store.load()
        missing = [a for a in addresses if doc.get(a) is None]
        if missing:
            raise StateError(f"not in state: {', '.join(missing)}")
        for a in addresses:
            doc.remove(a)
        store.save(doc)
    stderr.print(f"Removed {len(addresses)} resource(s) from state.")


@cli.command("force-unlock")
@click.pass_context
@_guard
def force_unlock(ctx):
    """Remove a lock left behind by an interrupted run."""
    stderr = Console(stderr=True, no_color=ctx.obj.get("no_color", False))
    info = _store(_settings(ctx)).force_unlock()
    if info is None:
        stderr.print("State is not locked.")
    else:
        stderr.print(f"Lock removed (was held by pid {info.get('pid')} on {info.get('host')}).")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
