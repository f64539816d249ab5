"""Build orchestration.

This module provides the high-level build API:
- build_packages(): Main entry point - filter, resolve, build and compose
- Dependency-driven scheduling on a bounded worker pool
- Failure propagation to dependent packages (and fail-fast cancellation)
- Deliverables manifest and build record persistence

A run moves through ``filtering -> resolving -> building -> composing`` and
ends ``done`` only if every scheduled package succeeded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from fleetpack.builds.composer import DirectoryServiceManifests, PackageComposer
from fleetpack.builds.deliverables import (
    collect_deliverables,
    generate_manifest,
    write_manifest,
)
from fleetpack.builds.graph import ALL_PACKAGES, BuildOrder, closure, resolve
from fleetpack.builds.history import record_report
from fleetpack.builds.memo import ArtifactMemo
from fleetpack.builds.provider import ArtifactProvider
from fleetpack.builds.toolchain import CargoToolchain, Toolchain
from fleetpack.config import get_settings
from fleetpack.errors import (
    BuildCancelledError,
    DependencyFailedError,
    FleetpackError,
    ManifestError,
    ResolutionError,
)
from fleetpack.manifest.schema import PackageSpec
from fleetpack.manifest.targets import filter_active
from fleetpack.prebuilt.fetch import ArtifactStore, HttpArtifactStore
from fleetpack.prebuilt.retry import RetryPolicy
from fleetpack.types import ArtifactHandle, ArtifactInfo, PackageStatus, RunState

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from fleetpack.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class BuildRequest:
    """What to build and for which target.

    Attributes:
        targets: Package names to build; ``["all"]`` means every deliverable.
        target_config: Target dimension -> value.
        fail_fast: Stop scheduling and cancel queued work on the first failure.
    """

    targets: list[str] = field(default_factory=lambda: [ALL_PACKAGES])
    target_config: dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False


@dataclass
class PackageResult:
    """Outcome of one package within a run."""

    package: str
    status: PackageStatus = PackageStatus.PENDING
    artifact: ArtifactHandle | None = None
    deliverable: bool = False
    error_code: str | None = None
    error_message: str | None = None
    setup_hint: str | None = None

    def succeed(self, handle: ArtifactHandle) -> None:
        self.status = PackageStatus.SUCCEEDED
        self.artifact = handle

    def fail(self, status: PackageStatus, error: BaseException) -> None:
        self.status = status
        self.error_code = getattr(error, "code", "unexpected_error")
        self.error_message = str(error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "package": self.package,
            "status": self.status.value,
            "deliverable": self.deliverable,
        }
        if self.artifact is not None:
            data["artifact"] = {
                "path": str(self.artifact.path),
                "size_bytes": self.artifact.size_bytes,
                "sha256": self.artifact.sha256,
            }
        if self.error_code:
            data["error"] = {"code": self.error_code, "message": self.error_message}
            if self.setup_hint:
                data["error"]["setup_hint"] = self.setup_hint
        return data


@dataclass
class BuildReport:
    """Result of a build invocation."""

    state: RunState = RunState.FILTERING
    state_history: list[RunState] = field(default_factory=list)
    order: list[str] = field(default_factory=list)
    results: dict[str, PackageResult] = field(default_factory=dict)
    deliverables: list[ArtifactInfo] = field(default_factory=list)
    manifest_path: Path | None = None
    error_code: str | None = None
    error_message: str | None = None
    run_id: int | None = None

    def advance(self, state: RunState) -> None:
        logger.debug("Run state: %s", state.value)
        self.state = state
        self.state_history.append(state)

    def abort(self, error: FleetpackError) -> None:
        """End the run before any package was scheduled."""
        self.error_code = error.code
        self.error_message = str(error)
        self.advance(RunState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def failures(self) -> list[PackageResult]:
        """Return every package result that is not a success, in build order."""
        return [
            self.results[name]
            for name in self.order
            if self.results[name].status != PackageStatus.SUCCEEDED
        ]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "order": list(self.order),
            "packages": [self.results[name].to_dict() for name in self.order],
            "deliverables": [
                {
                    "package": a.package,
                    "path": a.relative_path,
                    "size_bytes": a.size_bytes,
                    "sha256": a.sha256,
                    "kind": a.kind,
                }
                for a in self.deliverables
            ],
        }
        if self.manifest_path is not None:
            data["manifest_path"] = str(self.manifest_path)
        if self.error_code:
            data["error"] = {"code": self.error_code, "message": self.error_message}
        if self.run_id is not None:
            data["run_id"] = self.run_id
        return data


def _requested_roots(order: BuildOrder, targets: Sequence[str]) -> set[str]:
    roots: set[str] = set()
    for name in targets:
        if name == ALL_PACKAGES:
            roots.update(order.order)
        else:
            roots.add(name)
    return {
        name
        for name in roots
        if name in order and not order.graph.specs[name].intermediate_only
    }


class Orchestrator:
    """Schedules obtain and compose work for a resolved build order."""

    def __init__(
        self,
        provider: ArtifactProvider,
        composer: PackageComposer,
        max_workers: int = 4,
        session: Session | None = None,
        write_deliverables: bool = True,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider
        self.composer = composer
        self.max_workers = max_workers
        self.session = session
        self.write_deliverables = write_deliverables

    def run(self, specs: Sequence[PackageSpec], request: BuildRequest) -> BuildReport:
        """Build the requested packages.

        Manifest and resolution errors end the run in ``failed`` before any
        package is scheduled. Package failures are reported per package.
        """
        report = BuildReport()
        report.advance(RunState.FILTERING)
        try:
            active = filter_active(specs, request.target_config)
            logger.info("%d of %d package(s) active", len(active), len(specs))

            report.advance(RunState.RESOLVING)
            order = closure(resolve(active), request.targets)
        except (ManifestError, ResolutionError) as e:
            logger.error("Cannot build: %s", e)
            report.abort(e)
            self._record(report, request)
            return report

        report.order = list(order)
        for spec in order.specs():
            report.results[spec.name] = PackageResult(
                package=spec.name, setup_hint=spec.setup_hint
            )
        for name in _requested_roots(order, request.targets):
            report.results[name].deliverable = True

        report.advance(RunState.BUILDING)
        self._execute(order, report, request.fail_fast)

        report.advance(RunState.COMPOSING)
        self._collect(report, request)

        report.advance(
            RunState.DONE
            if all(r.status == PackageStatus.SUCCEEDED for r in report.results.values())
            else RunState.FAILED
        )
        logger.info("Build finished: %s", report.state.value)
        self._record(report, request)
        return report

    def _produce(
        self,
        spec: PackageSpec,
        order: BuildOrder,
        memo: ArtifactMemo[ArtifactHandle],
        cancel: threading.Event,
    ) -> ArtifactHandle:
        def factory() -> ArtifactHandle:
            if cancel.is_set():
                raise BuildCancelledError(spec.name)
            obtained = self.provider.obtain(spec)

            dependencies: list[ArtifactHandle] = []
            for member in order.graph.members(spec.name):
                handle = memo.get(member)
                if handle is None:
                    raise DependencyFailedError(spec.name, member)
                dependencies.append(handle)

            if cancel.is_set():
                raise BuildCancelledError(spec.name)
            return self.composer.compose(spec, obtained, dependencies, cancel)

        return memo.get_or_create(spec.name, factory)

    def _execute(self, order: BuildOrder, report: BuildReport, fail_fast: bool) -> None:
        graph = order.graph
        results = report.results
        remaining = {name: set(graph.members(name)) for name in order}
        dependents = {
            name: [d for d in composites if d in order]
            for name, composites in graph.dependents().items()
            if name in order
        }

        memo: ArtifactMemo[ArtifactHandle] = ArtifactMemo()
        cancel = threading.Event()
        ready = deque(name for name in order if not remaining[name])
        in_flight: dict[Future[ArtifactHandle], str] = {}

        def skip_dependents(name: str) -> None:
            for dependent in dependents[name]:
                result = results[dependent]
                if result.status != PackageStatus.PENDING:
                    continue
                result.fail(
                    PackageStatus.SKIPPED, DependencyFailedError(dependent, name)
                )
                logger.warning("Skipping %s: dependency %s failed", dependent, name)
                skip_dependents(dependent)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="fleetpack-build"
        ) as pool:

            def submit_ready() -> None:
                while ready and not cancel.is_set():
                    name = ready.popleft()
                    results[name].status = PackageStatus.RUNNING
                    future = pool.submit(
                        self._produce, graph.specs[name], order, memo, cancel
                    )
                    in_flight[future] = name

            submit_ready()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    result = results[name]

                    if future.cancelled():
                        result.fail(PackageStatus.CANCELLED, BuildCancelledError(name))
                        continue

                    error = future.exception()
                    if error is None:
                        result.succeed(future.result())
                        logger.info("Built %s", name)
                        for dependent in dependents[name]:
                            remaining[dependent].discard(name)
                            if (
                                not remaining[dependent]
                                and results[dependent].status == PackageStatus.PENDING
                            ):
                                ready.append(dependent)
                        continue

                    if isinstance(error, BuildCancelledError):
                        result.fail(PackageStatus.CANCELLED, error)
                        continue

                    result.fail(PackageStatus.FAILED, error)
                    if isinstance(error, FleetpackError):
                        logger.error("Package %s failed: %s", name, error)
                    else:
                        logger.error(
                            "Package %s failed unexpectedly",
                            name,
                            exc_info=(type(error), error, error.__traceback__),
                        )
                    skip_dependents(name)

                    if fail_fast and not cancel.is_set():
                        logger.warning("Fail-fast: cancelling remaining work")
                        cancel.set()
                        for queued in in_flight:
                            queued.cancel()

                submit_ready()

        for name in order:
            result = results[name]
            if result.status == PackageStatus.PENDING:
                result.fail(PackageStatus.CANCELLED, BuildCancelledError(name))

    def _collect(self, report: BuildReport, request: BuildRequest) -> None:
        handles: list[ArtifactHandle] = []
        for name in report.order:
            result = report.results[name]
            if result.deliverable and result.artifact is not None:
                handles.append(result.artifact)
        report.deliverables = collect_deliverables(handles, self.composer.output_dir)
        if not self.write_deliverables:
            return
        manifest = generate_manifest(
            report.deliverables,
            target_config=request.target_config,
            requested=request.targets,
        )
        report.manifest_path = write_manifest(manifest, self.composer.output_dir)

    def _record(self, report: BuildReport, request: BuildRequest) -> None:
        if self.session is None:
            return
        run = record_report(self.session, report, request)
        report.run_id = run.id


def build_packages(
    specs: Sequence[PackageSpec],
    request: BuildRequest,
    settings: Settings | None = None,
    session: Session | None = None,
    toolchain: Toolchain | None = None,
    store: ArtifactStore | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BuildReport:
    """Build packages with collaborators wired from settings.

    Args:
        specs: Every manifest entry (unfiltered).
        request: Requested packages, target configuration and failure mode.
        settings: Settings instance; uses default if not provided.
        session: Optional database session for build records.
        toolchain: Toolchain override; defaults to ``cargo`` in ``base_dir``.
        store: Artifact store override; defaults to the HTTP store unless
            offline.
        sleep: Sleep function used between fetch retries.

    Returns:
        BuildReport for the invocation.
    """
    if settings is None:
        settings = get_settings()

    if toolchain is None:
        toolchain = CargoToolchain(
            settings.base_dir,
            command=settings.toolchain_command,
            timeout=settings.build_timeout,
            target_dir=settings.cargo_target_dir,
        )

    with ExitStack() as stack:
        if store is None and not settings.offline:
            client = stack.enter_context(httpx.Client(follow_redirects=True))
            store = HttpArtifactStore(
                client,
                settings.artifact_store_url,
                timeout=settings.download_timeout,
            )

        provider = ArtifactProvider(
            toolchain=toolchain,
            store=store,
            base_dir=settings.base_dir,
            download_dir=settings.download_dir,
            manual_dir=settings.effective_manual_dir,
            log_dir=settings.output_dir,
            retry_policy=RetryPolicy(
                max_attempts=settings.fetch_max_attempts,
                initial_backoff=settings.fetch_initial_backoff,
                multiplier=settings.fetch_backoff_multiplier,
                max_backoff=settings.fetch_max_backoff,
            ),
            offline=settings.offline,
            sleep=sleep,
        )
        composer = PackageComposer(
            output_dir=settings.output_dir,
            base_dir=settings.base_dir,
            service_manifests=DirectoryServiceManifests(settings.service_manifest_dir),
        )
        orchestrator = Orchestrator(
            provider,
            composer,
            max_workers=settings.max_concurrent_builds,
            session=session,
        )
        return orchestrator.run(specs, request)


__all__ = [
    "BuildReport",
    "BuildRequest",
    "Orchestrator",
    "PackageResult",
    "build_packages",
]
