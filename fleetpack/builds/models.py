"""Build ORM models.

This module defines the BuildRun and PackageBuild models for storing the
outcome of build invocations and of every package they scheduled.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleetpack.db import Base
from fleetpack.types import PackageStatus, RunState


class BuildRun(Base):
    """ORM model for one build invocation.

    Attributes:
        id: Primary key.
        requested: JSON array of requested package names.
        target_config: JSON mapping of target dimensions to values.
        fail_fast: Whether the run used fail-fast mode.
        state: Final run state (done or failed).
        started_at: Timestamp when the run started.
        finished_at: Timestamp when the run finished.
        error_code: Stable error code if the run failed before building.
        error_message: Error message if the run failed.
    """

    __tablename__ = "build_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    requested: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    target_config: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    fail_fast: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Status and timing
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunState.FILTERING.value, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    packages: Mapped[list["PackageBuild"]] = relationship(
        "PackageBuild",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="PackageBuild.position",
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRun."""
        return f"<BuildRun(id={self.id}, state='{self.state}')>"

    def mark_finished(
        self,
        state: RunState,
        error_code: str | None = None,
        message: str | None = None,
    ) -> None:
        """Record the terminal state of this run."""
        self.state = state.value
        self.finished_at = datetime.now()
        if error_code:
            self.error_code = error_code
        if message:
            self.error_message = message


class PackageBuild(Base):
    """ORM model for one package within a build run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to BuildRun.
        position: Index of the package in the build order.
        package: Package name.
        status: Final package status.
        deliverable: Whether the output is part of the deliverable set.
        artifact_path: Path of the composed output, if any.
        size_bytes: Output size in bytes.
        sha256: SHA-256 of the output.
        error_code: Stable error code if the package did not succeed.
        error_message: Error message details.
    """

    __tablename__ = "package_builds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_runs.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    package: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PackageStatus.PENDING.value
    )
    deliverable: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Output
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Error tracking
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped["BuildRun"] = relationship("BuildRun", back_populates="packages")

    __table_args__ = (Index("ix_package_builds_package_status", "package", "status"),)

    def __repr__(self) -> str:
        """Return string representation of PackageBuild."""
        return (
            f"<PackageBuild(id={self.id}, package='{self.package}', "
            f"status='{self.status}')>"
        )

    def mark_succeeded(
        self, artifact_path: str, size_bytes: int | None, sha256: str | None
    ) -> None:
        """Mark this package as built."""
        self.status = PackageStatus.SUCCEEDED.value
        self.artifact_path = artifact_path
        self.size_bytes = size_bytes
        self.sha256 = sha256

    def mark_failed(
        self,
        status: PackageStatus = PackageStatus.FAILED,
        error_code: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this package as failed, skipped or cancelled.

        Args:
            status: Non-success status to record.
            error_code: Stable error code.
            message: Error message details.
        """
        self.status = status.value
        if error_code:
            self.error_code = error_code
        if message:
            self.error_message = message


__all__ = ["BuildRun", "PackageBuild"]
