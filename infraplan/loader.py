"""
Turn command-line paths into a Configuration with variables applied.
"""
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from infraplan import variables
from infraplan.detect import detect_format
from infraplan.errors import ConfigError
from infraplan.models.configuration import Configuration
from infraplan.parsers import manifest, terraform

logger = logging.getLogger(__name__)

_PARSERS = {
    "terraform": terraform.load_file,
    "manifest": manifest.load_file,
}


def collect_files(paths: Sequence[str]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                # skip our own state directory and hidden tool dirs like .terraform
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            raise ConfigError(f"'{p}' does not exist")
    return files


def parse_files(file_paths: List[str]) -> Configuration:
    config = Configuration()
    for fp in file_paths:
        fmt = detect_format(fp)
        parser = _PARSERS.get(fmt)
        if parser is None:
            logger.debug("Skipping unsupported file: %s", fp)
            continue
        logger.debug("Parsing %s as %s", fp, fmt)
        config.merge(parser(fp))
    return config


def load(
    paths: Sequence[str],
    var_files: Optional[List[str]] = None,
    assignments: Optional[Dict[str, Any]] = None,
    namespace: str = "default",
) -> Configuration:
    config = parse_files(collect_files(paths))
    values = variables.resolve_values(config, var_files, assignments)
    variables.apply(config, values)
    for r in config.resources:
        r.namespace = namespace
    logger.info("Loaded %d resource(s) from %d file(s)", len(config.resources), len(config.files))
    return config
