"""Build request file loading.

This module provides helpers for loading build requests from YAML or JSON
files. Relative application directories and cache bind paths are resolved
against the directory holding the request file.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from cnb_imagegen.build.request import BuildRequest
from cnb_imagegen.image.reference import InvalidReferenceError


class BuildRequestFileError(Exception):
    """Raised when a build request file cannot be loaded."""

    def __init__(self, path: Path, message: str, code: str = "build_request_file_error") -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
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

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_build_request(data: dict[str, Any], base_dir: Path | None = None) -> BuildRequest:
    """Validate build request data.

    Args:
        data: Dictionary containing request fields.
        base_dir: Directory relative paths are resolved against.

    Returns:
        Validated BuildRequest.

    Raises:
        pydantic.ValidationError: If data does not match the model.
    """
    data = dict(data)
    if base_dir is not None:
        app = data.get("application_directory")
        if isinstance(app, str) and not Path(app).is_absolute():
            data["application_directory"] = str(base_dir / app)
        for key in ("build_cache", "launch_cache"):
            cache = data.get(key)
            if isinstance(cache, dict) and isinstance(cache.get("bind"), str):
                bind = cache["bind"]
                if not Path(bind).is_absolute():
                    data[key] = {**cache, "bind": str(base_dir / bind)}
    return BuildRequest.model_validate(data)


def load_build_request(path: Path) -> BuildRequest:
    """Load a build request from a YAML or JSON file.

    The format is chosen by file extension (``.json`` is JSON, anything else
    is parsed as YAML).

    Args:
        path: Path to the request file.

    Returns:
        Validated BuildRequest.

    Raises:
        BuildRequestFileError: If the file is missing, unparseable or invalid.
    """
    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise BuildRequestFileError(path, "file not found", code="not_found") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise BuildRequestFileError(path, f"parse error: {e}", code="parse_error") from e
    except ValueError as e:
        raise BuildRequestFileError(path, str(e), code="parse_error") from e

    try:
        return parse_build_request(data, base_dir=path.parent)
    except (ValidationError, InvalidReferenceError) as e:
        raise BuildRequestFileError(
            path, f"validation error: {e}", code="validation_error"
        ) from e


__all__ = [
    "BuildRequestFileError",
    "load_build_request",
    "load_json",
    "load_yaml",
    "parse_build_request",
]
