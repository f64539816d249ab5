"""Target-configuration filtering of manifest entries.

A package declaring ``only_for_targets.<dimension> = <value>`` is active only
when the build's target configuration assigns exactly that value to the
dimension. Packages without constraints are always active.
"""

from collections.abc import Iterable, Mapping

from fleetpack.manifest.schema import PackageSpec


def is_active(spec: PackageSpec, target_config: Mapping[str, str]) -> bool:
    """Return True if ``spec`` is active under ``target_config``.

    A dimension missing from ``target_config`` counts as a mismatch.
    """
    return all(
        dimension in target_config and target_config[dimension] == value
        for dimension, value in spec.target_constraints.items()
    )


def filter_active(
    specs: Iterable[PackageSpec],
    target_config: Mapping[str, str],
) -> list[PackageSpec]:
    """Return the active specs, preserving declaration order."""
    return [spec for spec in specs if is_active(spec, target_config)]


def parse_target_assignments(assignments: Iterable[str]) -> dict[str, str]:
    """Parse ``dimension=value`` strings into a target configuration.

    Raises:
        ValueError: If an assignment is malformed or a dimension is given
            two different values.
    """
    config: dict[str, str] = {}
    for item in assignments:
        dimension, sep, value = item.partition("=")
        dimension = dimension.strip()
        value = value.strip()
        if not sep or not dimension or not value:
            raise ValueError(f"Invalid target assignment '{item}', expected KEY=VALUE")
        if config.get(dimension, value) != value:
            raise ValueError(
                f"Conflicting values for target dimension '{dimension}': "
                f"'{config[dimension]}' and '{value}'"
            )
        config[dimension] = value
    return config


__all__ = ["filter_active", "is_active", "parse_target_assignments"]
