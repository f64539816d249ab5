"""Tests for builds/service.py module.

Runs the orchestrator end to end with a fake toolchain and artifact store.
"""

import hashlib
import json
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fleetpack.builds.composer import PackageComposer
from fleetpack.builds.deliverables import DELIVERABLES_FILENAME
from fleetpack.builds.models import BuildRun
from fleetpack.builds.provider import ArtifactProvider
from fleetpack.builds.service import BuildRequest, Orchestrator, build_packages
from fleetpack.config import Settings
from fleetpack.db import Base
from fleetpack.prebuilt.retry import RetryPolicy
from fleetpack.types import PackageStatus, RunState

COMMIT = "6ff2bd8b6c0e1e1d4c5c6c1f1c7e1d7b2b3c4d5e"


class CountingComposer(PackageComposer):
    """Composer that records every package it composes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.composed: list[str] = []
        self._lock = threading.Lock()

    def compose(self, spec, obtained, dependencies=(), cancel_event=None):
        with self._lock:
            self.composed.append(spec.name)
        return super().compose(spec, obtained, dependencies, cancel_event)


class CancelAwaitingComposer(CountingComposer):
    """Composer that holds every package until the run is cancelled."""

    def compose(self, spec, obtained, dependencies=(), cancel_event=None):
        if cancel_event is not None:
            cancel_event.wait(timeout=5)
        return super().compose(spec, obtained, dependencies, cancel_event)


@pytest.fixture
def workspace(tmp_path):
    base = tmp_path / "src"
    (base / "out" / "config").mkdir(parents=True)
    (base / "out" / "config" / "config.toml").write_text("listen = '[::]:12221'\n")
    return tmp_path


@pytest.fixture
def provider(workspace, fake_toolchain, fake_store):
    return ArtifactProvider(
        toolchain=fake_toolchain,
        store=fake_store,
        base_dir=workspace / "src",
        download_dir=workspace / "downloads",
        manual_dir=workspace / "manual",
        log_dir=workspace / "out",
        retry_policy=RetryPolicy(max_attempts=2, initial_backoff=0.0),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def composer(workspace):
    return CountingComposer(output_dir=workspace / "out", base_dir=workspace / "src")


@pytest.fixture
def orchestrator(provider, composer):
    return Orchestrator(provider, composer, max_workers=4)


@pytest.fixture
def zone_payload(tmp_path, tar_writer):
    """Bytes of a valid zone image for the fake artifact store."""
    path = tar_writer(
        tmp_path / "payload" / "b.tar.gz",
        {"zone.json": b"{}", "root/opt/oxide/b/bin/b": b"prebuilt b"},
    )
    return path.read_bytes()


def local(binaries=None):
    source = {"type": "local", "paths": [{"from": "out/config", "to": "/etc/svc"}]}
    if binaries:
        source["rust"] = {"binary_names": binaries}
    return source


def prebuilt(payload):
    return {
        "type": "prebuilt",
        "repo": "b",
        "commit": COMMIT,
        "sha256": hashlib.sha256(payload).hexdigest(),
    }


def composite(*members):
    return {"type": "composite", "packages": list(members)}


class TestCompositeScenario:
    """A local package and a prebuilt one merged into a composite."""

    @pytest.fixture
    def specs(self, make_spec, zone_payload):
        return [
            make_spec("a", source=local(["a-server"])),
            make_spec("b", source=prebuilt(zone_payload)),
            make_spec("c", source=composite("a.tar.gz", "b.tar.gz")),
        ]

    def test_members_built_before_composite(
        self, orchestrator, specs, fake_store, zone_payload, tar_reader
    ):
        """Requesting the composite builds its members first."""
        fake_store.add("b", COMMIT, "b.tar.gz", zone_payload)

        report = orchestrator.run(specs, BuildRequest(targets=["c"]))

        assert report.state == RunState.DONE
        assert report.exit_code == 0
        assert report.order.index("a") < report.order.index("c")
        assert report.order.index("b") < report.order.index("c")
        assert report.state_history == [
            RunState.FILTERING,
            RunState.RESOLVING,
            RunState.BUILDING,
            RunState.COMPOSING,
            RunState.DONE,
        ]
        entries = tar_reader(report.results["c"].artifact.path)
        assert entries["root/opt/oxide/b/bin/b"] == b"prebuilt b"
        assert entries["root/opt/oxide/a/bin/a-server"] == b"#!bin a-server\n"

    def test_provenance_mismatch(
        self, orchestrator, specs, fake_store, workspace, tmp_path, tar_writer
    ):
        """A digest mismatch fails the prebuilt and its composite only."""
        bogus = tar_writer(tmp_path / "bogus.tar.gz", {"x": b"stale"}).read_bytes()
        fake_store.add("b", COMMIT, "b.tar.gz", bogus)

        report = orchestrator.run(specs, BuildRequest(targets=["c"]))

        assert report.state == RunState.FAILED
        assert report.exit_code == 1
        assert report.results["b"].status == PackageStatus.FAILED
        assert report.results["b"].error_code == "provenance_mismatch"
        assert report.results["c"].status == PackageStatus.SKIPPED
        assert report.results["c"].error_code == "dependency_failed"
        assert report.results["a"].status == PackageStatus.SUCCEEDED
        assert (workspace / "out" / "a" / "a.tar.gz").is_file()
        assert not (workspace / "out" / "c" / "c.tar.gz").exists()
        assert [r.package for r in report.failures()] == ["b", "c"]


class TestTargetFiltering:
    """Tests for target-dependent activation."""

    def test_variant_selected(self, orchestrator, make_spec):
        """Only the package matching the target configuration is built."""
        specs = [
            make_spec(
                "dendrite-asic",
                service_name="dendrite",
                targets={"switch_variant": "asic"},
            ),
            make_spec(
                "dendrite-stub",
                service_name="dendrite",
                targets={"switch_variant": "stub"},
            ),
        ]

        report = orchestrator.run(
            specs, BuildRequest(target_config={"switch_variant": "asic"})
        )

        assert report.order == ["dendrite-asic"]
        assert report.state == RunState.DONE

    def test_reference_to_excluded_package(
        self, orchestrator, make_spec, fake_toolchain, composer
    ):
        """A composite referencing a filtered-out package schedules nothing."""
        specs = [
            make_spec("dendrite-stub", targets={"switch_variant": "stub"}),
            make_spec("switch", source=composite("dendrite-stub.tar.gz")),
        ]

        report = orchestrator.run(
            specs, BuildRequest(target_config={"switch_variant": "asic"})
        )

        assert report.state == RunState.FAILED
        assert report.error_code == "unknown_reference"
        assert report.state_history == [
            RunState.FILTERING,
            RunState.RESOLVING,
            RunState.FAILED,
        ]
        assert report.results == {}
        assert composer.composed == []
        assert fake_toolchain.calls == []

    def test_unknown_requested_package(self, orchestrator, make_spec):
        """Requesting an unknown package fails resolution."""
        report = orchestrator.run(
            [make_spec("nexus")], BuildRequest(targets=["nexsu"])
        )
        assert report.error_code == "unknown_package"
        assert report.exit_code == 1


class TestBuildOnce:
    """Tests for shared members."""

    def test_shared_member_built_once(
        self, orchestrator, make_spec, fake_toolchain, composer
    ):
        """A member of several composites is obtained and composed once."""
        specs = [
            make_spec("gateway", source=local(["mgs"]), intermediate_only=True),
            make_spec("switch-asic", source=composite("gateway.tar.gz")),
            make_spec("switch-stub", source=composite("gateway.tar.gz")),
        ]

        report = orchestrator.run(specs, BuildRequest())

        assert report.state == RunState.DONE
        assert fake_toolchain.calls == [(("mgs",), False)]
        assert sorted(composer.composed) == ["gateway", "switch-asic", "switch-stub"]

    def test_intermediate_not_delivered(self, orchestrator, make_spec, workspace):
        """Intermediate-only packages are built but not listed as deliverables."""
        specs = [
            make_spec("gateway", intermediate_only=True),
            make_spec("switch-asic", source=composite("gateway.tar.gz")),
        ]

        report = orchestrator.run(specs, BuildRequest())

        assert report.results["gateway"].status == PackageStatus.SUCCEEDED
        assert not report.results["gateway"].deliverable
        assert [a.package for a in report.deliverables] == ["switch-asic"]
        manifest = json.loads((workspace / "out" / DELIVERABLES_FILENAME).read_text())
        assert [a["package"] for a in manifest["artifacts"]] == ["switch-asic"]
        relative_path = manifest["artifacts"][0]["relative_path"]
        assert relative_path == "switch-asic/switch-asic.tar.gz"


class TestFailureModes:
    """Tests for best-effort and fail-fast runs."""

    @pytest.fixture
    def specs(self, make_spec):
        return [
            make_spec("broken", source=local(["broken"])),
            make_spec("switch", source=composite("broken.tar.gz")),
            make_spec("nexus", source=local(["nexus"])),
            make_spec("oximeter", source=local(["oximeter"])),
        ]

    def test_best_effort(self, orchestrator, specs, fake_toolchain):
        """Unrelated packages still build after a failure."""
        fake_toolchain.fail.add("broken")

        report = orchestrator.run(specs, BuildRequest())

        statuses = {name: r.status for name, r in report.results.items()}
        assert statuses == {
            "broken": PackageStatus.FAILED,
            "switch": PackageStatus.SKIPPED,
            "nexus": PackageStatus.SUCCEEDED,
            "oximeter": PackageStatus.SUCCEEDED,
        }
        assert report.results["broken"].error_code == "build_failed"
        assert report.state == RunState.FAILED
        assert [a.package for a in report.deliverables] == ["nexus", "oximeter"]

    def test_fail_fast(self, provider, make_spec, specs, fake_toolchain, workspace):
        """Fail-fast cancels remaining work and publishes nothing partial."""
        fake_toolchain.fail.add("broken")
        composer = CancelAwaitingComposer(
            output_dir=workspace / "out", base_dir=workspace / "src"
        )
        orchestrator = Orchestrator(provider, composer, max_workers=2)

        report = orchestrator.run(specs, BuildRequest(fail_fast=True))

        assert report.results["broken"].status == PackageStatus.FAILED
        assert report.results["switch"].status == PackageStatus.SKIPPED
        for name in ("nexus", "oximeter"):
            assert report.results[name].status == PackageStatus.CANCELLED
            assert report.results[name].error_code == "cancelled"
        assert report.state == RunState.FAILED
        assert report.deliverables == []
        outputs = [p for p in (workspace / "out").rglob("*.tar*")]
        assert outputs == []
        assert list((workspace / "out").rglob("*.tmp")) == []

    def test_setup_hint_reported(self, orchestrator, make_spec):
        """Failed manual packages carry their setup hint."""
        spec = make_spec(
            "maghemite",
            source={"type": "manual"},
            setup_hint="Download maghemite.tar.gz from the release page",
        )

        report = orchestrator.run([spec], BuildRequest())

        result = report.results["maghemite"]
        assert result.error_code == "missing_manual_artifact"
        assert result.to_dict()["error"]["setup_hint"].startswith("Download")


class TestRecording:
    """Tests for build record persistence."""

    @pytest.fixture
    def session(self):
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(bind=engine)
        session = sessionmaker(bind=engine, expire_on_commit=False)()
        try:
            yield session
        finally:
            session.close()

    def test_run_recorded(self, provider, composer, make_spec, session, fake_toolchain):
        """Finished runs are stored with one row per package."""
        fake_toolchain.fail.add("broken")
        orchestrator = Orchestrator(provider, composer, session=session)
        specs = [
            make_spec("broken", source=local(["broken"])),
            make_spec("nexus", source=local(["nexus"])),
        ]

        report = orchestrator.run(specs, BuildRequest())

        run = session.get(BuildRun, report.run_id)
        assert run.state == "failed"
        assert [(p.package, p.status) for p in run.packages] == [
            ("broken", "failed"),
            ("nexus", "succeeded"),
        ]
        assert run.packages[1].sha256 == report.results["nexus"].artifact.sha256

    def test_resolution_failure_recorded(self, provider, composer, make_spec, session):
        """Runs that fail before building are recorded with their error."""
        orchestrator = Orchestrator(provider, composer, session=session)
        specs = [make_spec("switch", source=composite("missing.tar.gz"))]

        report = orchestrator.run(specs, BuildRequest())

        run = session.get(BuildRun, report.run_id)
        assert run.error_code == "unknown_reference"
        assert run.packages == []


class TestBuildPackages:
    """Tests for the build_packages entry point."""

    def test_wired_from_settings(
        self, workspace, make_spec, fake_toolchain, fake_store
    ):
        """Settings choose the output, download and manifest directories."""
        smf = workspace / "smf" / "nexus"
        smf.mkdir(parents=True)
        (smf / "manifest.xml").write_bytes(b"<service/>")
        settings = Settings(
            base_dir=workspace / "src",
            output_dir=workspace / "build",
            download_dir=workspace / "downloads",
            service_manifest_dir=workspace / "smf",
        )

        report = build_packages(
            [make_spec("nexus", source=local(["nexus"]))],
            BuildRequest(),
            settings=settings,
            toolchain=fake_toolchain,
            store=fake_store,
        )

        assert report.state == RunState.DONE
        artifact = report.results["nexus"].artifact.path
        assert artifact == workspace / "build" / "nexus" / "nexus.tar.gz"
        assert report.manifest_path == workspace / "build" / DELIVERABLES_FILENAME

    def test_default_toolchain_from_settings(self, workspace, fake_store):
        """The default toolchain takes its command and target dir from Settings."""
        settings = Settings(
            base_dir=workspace / "src",
            output_dir=workspace / "build",
            toolchain_command="cargo +nightly",
            cargo_target_dir=workspace / "target",
        )

        with patch("fleetpack.builds.service.CargoToolchain") as toolchain_cls:
            build_packages([], BuildRequest(), settings=settings, store=fake_store)

        toolchain_cls.assert_called_once_with(
            workspace / "src",
            command="cargo +nightly",
            timeout=settings.build_timeout,
            target_dir=workspace / "target",
        )

    def test_invalid_worker_count(self, provider, composer):
        """The worker pool must have at least one worker."""
        with pytest.raises(ValueError):
            Orchestrator(provider, composer, max_workers=0)
