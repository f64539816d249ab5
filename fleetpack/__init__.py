"""fleetpack - build and assemble service packages from a package manifest.

This package resolves the packages declared in a manifest, obtains their raw
artifacts (local toolchain builds, verified prebuilt downloads, or manually
supplied files) and composes them into tarballs and zone images.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
