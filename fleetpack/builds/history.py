"""Build record persistence.

This module stores build reports as BuildRun / PackageBuild rows and
provides lookups for past runs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetpack.builds.models import BuildRun, PackageBuild
from fleetpack.types import PackageStatus, RunState

if TYPE_CHECKING:
    from fleetpack.builds.service import BuildReport, BuildRequest

logger = logging.getLogger(__name__)


class BuildRunNotFoundError(Exception):
    """Raised when a build run is not found."""

    def __init__(self, run_id: int, code: str = "build_run_not_found") -> None:
        super().__init__(f"Build run not found: {run_id}")
        self.run_id = run_id
        self.code = code


def record_report(
    session: Session, report: BuildReport, request: BuildRequest
) -> BuildRun:
    """Persist a finished build report.

    Args:
        session: Database session.
        report: Report in a terminal state.
        request: The request the report answers.

    Returns:
        The flushed BuildRun (its ``id`` is assigned).
    """
    run = BuildRun(
        requested=list(request.targets),
        target_config=dict(request.target_config),
        fail_fast=request.fail_fast,
    )
    session.add(run)

    for position, name in enumerate(report.order):
        result = report.results[name]
        package = PackageBuild(
            position=position, package=name, deliverable=result.deliverable
        )
        if result.status == PackageStatus.SUCCEEDED and result.artifact is not None:
            package.mark_succeeded(
                str(result.artifact.path),
                result.artifact.size_bytes,
                result.artifact.sha256,
            )
        else:
            package.mark_failed(result.status, result.error_code, result.error_message)
        run.packages.append(package)

    final = report.state if report.state == RunState.DONE else RunState.FAILED
    run.mark_finished(
        final,
        report.error_code,
        report.error_message,
    )
    session.flush()
    logger.debug("Recorded build run %d (%s)", run.id, run.state)
    return run


def get_run(session: Session, run_id: int) -> BuildRun:
    """Get a build run by ID.

    Raises:
        BuildRunNotFoundError: If the run does not exist.
    """
    run = session.get(BuildRun, run_id)
    if run is None:
        raise BuildRunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    state: RunState | None = None,
    limit: int = 20,
) -> list[BuildRun]:
    """List build runs, newest first.

    Args:
        session: Database session.
        state: Filter by final state.
        limit: Maximum results to return.

    Returns:
        List of BuildRun instances.
    """
    stmt = select(BuildRun)
    if state is not None:
        stmt = stmt.where(BuildRun.state == state.value)
    stmt = stmt.order_by(BuildRun.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def list_package_builds(
    session: Session,
    package: str,
    limit: int = 20,
) -> list[PackageBuild]:
    """List the recorded builds of one package, newest first."""
    stmt = (
        select(PackageBuild)
        .where(PackageBuild.package == package)
        .order_by(PackageBuild.id.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildRunNotFoundError",
    "get_run",
    "list_package_builds",
    "list_runs",
    "record_report",
]
