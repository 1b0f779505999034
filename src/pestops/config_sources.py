"""YAML layers for the service configuration.

``defaults.yaml`` ships inside the package; an operator ``config.yaml`` is
laid over it. Mappings merge key by key (so a ``config.yaml`` that only sets
``scheduler.jobs.quickbooks.interval_seconds`` keeps the other job settings),
while lists such as OAuth ``scopes`` are replaced whole.
"""

import copy
import logging
import pathlib
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def deep_merge_dicts(base_dict: dict[str, Any], merge_dict: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``base_dict`` with ``merge_dict`` laid over it.

    Neither argument is modified.
    """
    merged = copy.deepcopy(base_dict)
    stack: list[tuple[dict[str, Any], dict[str, Any]]] = [(merged, merge_dict)]
    while stack:
        target, overlay = stack.pop()
        for key, value in overlay.items():
            current = target.get(key)
            if isinstance(value, dict) and isinstance(current, dict):
                stack.append((current, value))
            else:
                target[key] = copy.deepcopy(value)
    return merged


def load_yaml_file(file_path: str | pathlib.Path) -> dict[str, Any]:
    """Read one YAML layer. A missing, empty or malformed file counts as empty."""
    path = pathlib.Path(file_path)
    if not path.is_file():
        logger.info(f"No configuration file at {path}, skipping layer")
        return {}
    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.error(f"Could not parse {path}, skipping layer: {e}")
        return {}
    if content is None:
        return {}
    if not isinstance(content, dict):
        logger.warning(
            f"{path} holds a {type(content).__name__}, not a mapping; skipping layer"
        )
        return {}
    return content


def load_yaml_layers(paths: list[str | pathlib.Path]) -> dict[str, Any]:
    """Merge YAML files in order, later files overriding earlier ones."""
    merged: dict[str, Any] = {}
    for path in paths:
        layer = load_yaml_file(path)
        if layer:
            logger.debug(f"Applying configuration layer {path}: {sorted(layer)}")
            merged = deep_merge_dicts(merged, layer)
    return merged
