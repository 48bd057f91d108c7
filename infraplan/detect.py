import os

import yaml

MANIFEST_KIND = "infraplan/v1"


def _looks_like_manifest(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    if doc.get("kind") == MANIFEST_KIND:
        return True
    # Untagged manifest: a resources list whose entries carry type + name
    resources = doc.get("resources")
    return (
        isinstance(resources, list)
        and bool(resources)
        and all(isinstance(r, dict) and "type" in r and "name" in r for r in resources)
    )


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'manifest', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath, encoding="utf-8") as fh:
                docs = list(yaml.safe_load_all(fh))
        except (OSError, yaml.YAMLError):
            # let the manifest parser report it; skipping would plan deletes
            return "manifest"

        for doc in docs:
            if _looks_like_manifest(doc):
                return "manifest"

    return "unknown"
