"""Build orchestration module.

This module handles:
- Dependency resolution over composite packages
- Obtaining raw artifacts (toolchain builds, verified downloads, manual files)
- Composing tarballs and zone images
- Scheduling builds and recording their outcome
"""

from fleetpack.builds.models import BuildRun, PackageBuild

__all__ = ["BuildRun", "PackageBuild"]

# Lazy imports for submodules to avoid circular imports
# Access via fleetpack.builds.service, etc.
