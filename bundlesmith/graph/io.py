"""Run document loading.

This module loads the resolved graph and build options from YAML or JSON
files and validates them with the schema models.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from bundlesmith.graph.schema import RunDocument


class GraphLoadError(Exception):
    """Raised when a run document cannot be loaded or validated."""

    def __init__(self, message: str, code: str = "graph_load_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_run_document(path: Path) -> RunDocument:
    """Load and validate a run document from a YAML or JSON file.

    The format is chosen by file extension; anything other than ``.json``
    is read as YAML.

    Args:
        path: Path to the run document.

    Returns:
        Validated RunDocument.

    Raises:
        GraphLoadError: If the file is missing, unparsable or invalid.
    """
    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise GraphLoadError(f"Run document not found: {path}", code="not_found") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise GraphLoadError(f"Cannot parse {path}: {e}", code="parse_error") from e

    try:
        return RunDocument.model_validate(data)
    except ValidationError as e:
        raise GraphLoadError(
            f"Invalid run document {path}: {e}", code="validation_error"
        ) from e


__all__ = ["GraphLoadError", "load_json", "load_run_document", "load_yaml"]
