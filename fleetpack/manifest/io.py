"""Package manifest loading.

This module reads a package manifest from TOML (the canonical format), YAML
or JSON and validates every entry into a ``PackageSpec``.

The document is a mapping with a ``package`` key holding either a table of
``name -> entry`` (the TOML ``[package.<name>]`` form) or a list of entries
that each carry an explicit ``name``.
"""

import json
import logging
import tomllib
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from fleetpack.errors import DuplicateNameError, ManifestError
from fleetpack.manifest.schema import PackageSpec

logger = logging.getLogger(__name__)


def load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

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


def _iter_entries(packages: Any) -> Iterable[tuple[str, dict[str, Any]]]:
    """Yield (name, entry) pairs from either manifest shape."""
    if isinstance(packages, dict):
        for name, entry in packages.items():
            if not isinstance(entry, dict):
                raise ManifestError(f"Package '{name}' must be a table")
            if "name" in entry and entry["name"] != name:
                raise ManifestError(
                    f"Package '{name}' declares a conflicting name '{entry['name']}'"
                )
            yield name, {**entry, "name": name}
    elif isinstance(packages, list):
        for index, entry in enumerate(packages):
            if not isinstance(entry, dict) or "name" not in entry:
                raise ManifestError(f"Package entry #{index} must have a 'name'")
            yield str(entry["name"]), entry
    else:
        raise ManifestError("'package' must be a table or a list of entries")


def check_unique_names(specs: Iterable[PackageSpec]) -> None:
    """Raise DuplicateNameError on the first repeated package name."""
    seen: set[str] = set()
    for spec in specs:
        if spec.name in seen:
            raise DuplicateNameError(spec.name)
        seen.add(spec.name)


def parse_manifest_data(data: dict[str, Any]) -> list[PackageSpec]:
    """Validate a manifest document into package specs in declaration order.

    Args:
        data: Parsed manifest document.

    Returns:
        List of validated PackageSpec instances.

    Raises:
        ManifestError: If any entry is malformed.
        DuplicateNameError: If two entries share a name.
    """
    if "package" not in data:
        raise ManifestError("Manifest has no 'package' section")

    specs: list[PackageSpec] = []
    for name, entry in _iter_entries(data["package"]):
        try:
            specs.append(PackageSpec.model_validate(entry))
        except ValidationError as e:
            raise ManifestError(f"Invalid package '{name}': {e}") from e

    check_unique_names(specs)
    logger.debug("Parsed %d package(s) from manifest", len(specs))
    return specs


def load_manifest(path: Path) -> list[PackageSpec]:
    """Load and validate a manifest file (TOML, YAML or JSON).

    File format is determined by extension.

    Raises:
        ManifestError: If the file is missing, unparsable, or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            data = load_toml(path)
        elif suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise ManifestError(
                f"Unsupported file extension '{suffix}'. "
                "Use .toml, .yaml, .yml, or .json"
            )
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}") from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestError(f"Parse error in {path}: {e}") from e
    except ValueError as e:
        raise ManifestError(str(e)) from e

    specs = parse_manifest_data(data)
    logger.info("Loaded %d package(s) from %s", len(specs), path)
    return specs


__all__ = [
    "check_unique_names",
    "load_json",
    "load_manifest",
    "load_toml",
    "load_yaml",
    "parse_manifest_data",
]
