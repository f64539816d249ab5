"""Package manifest module.

This module handles:
- Pydantic schema for manifest entries (tagged source/output variants)
- Loading manifests from TOML, YAML or JSON
- Filtering entries by target configuration
"""

from fleetpack.manifest.io import load_manifest, parse_manifest_data
from fleetpack.manifest.schema import PackageSpec
from fleetpack.manifest.targets import filter_active, is_active

__all__ = [
    "PackageSpec",
    "filter_active",
    "is_active",
    "load_manifest",
    "parse_manifest_data",
]
