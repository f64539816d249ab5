"""Shared fixtures for fleetpack tests."""

import hashlib
import io
import tarfile
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from fleetpack.builds.toolchain import ToolchainResult
from fleetpack.manifest.schema import PackageSpec
from fleetpack.prebuilt.fetch import TransportError


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_tar(path: Path, files: dict[str, bytes], compress: bool = True) -> Path:
    """Write a tar archive holding ``files`` (name -> payload)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz" if compress else "w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def read_tar(path: Path) -> dict[str, bytes | None]:
    """Return archive entries in order (name -> payload, None for non-files)."""
    entries: dict[str, bytes | None] = {}
    with tarfile.open(path, "r:*") as tar:
        for info in tar:
            if info.isreg():
                fileobj = tar.extractfile(info)
                assert fileobj is not None
                entries[info.name] = fileobj.read()
            else:
                entries[info.name] = None
    return entries


class FakeToolchain:
    """Toolchain that writes placeholder binaries instead of compiling."""

    def __init__(self, out_dir: Path, fail: Sequence[str] = ()) -> None:
        self.out_dir = out_dir
        self.fail = set(fail)
        self.calls: list[tuple[tuple[str, ...], bool]] = []
        self._lock = threading.Lock()

    def build(
        self, binary_names: Sequence[str], release: bool, log_path: Path
    ) -> ToolchainResult:
        with self._lock:
            self.calls.append((tuple(binary_names), release))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        failed = bool(self.fail.intersection(binary_names))
        log_path.write_text("error: could not compile\n" if failed else "ok\n")
        if not failed:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            for name in binary_names:
                (self.out_dir / name).write_bytes(f"#!bin {name}\n".encode())
        return ToolchainResult(
            success=not failed,
            exit_code=101 if failed else 0,
            out_dir=self.out_dir,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            command="cargo build",
            error_message="Build failed with exit code 101" if failed else None,
        )


class FakeStore:
    """In-memory artifact store with injectable transport failures."""

    def __init__(self) -> None:
        self.artifacts: dict[tuple[str, str, str], bytes] = {}
        self.failures: dict[str, list[TransportError]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def add(self, repo: str, commit: str, filename: str, data: bytes) -> None:
        self.artifacts[(repo, commit, filename)] = data

    def fail_next(self, filename: str, *errors: TransportError) -> None:
        self.failures.setdefault(filename, []).extend(errors)

    def stream(self, repo: str, commit: str, filename: str) -> Iterator[bytes]:
        with self._lock:
            self.calls.append((repo, commit, filename))
            pending = self.failures.get(filename)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        key = (repo, commit, filename)
        if key not in self.artifacts:
            raise TransportError(f"not found: {filename}", retryable=False)
        data = self.artifacts[key]
        yield data[: len(data) // 2]
        yield data[len(data) // 2 :]


@pytest.fixture
def make_spec() -> Callable[..., PackageSpec]:
    """Factory for PackageSpec from manifest-shaped keyword arguments."""

    def factory(
        name: str,
        source: dict[str, Any] | None = None,
        output: str = "zone",
        intermediate_only: bool = False,
        targets: dict[str, str] | None = None,
        service_name: str | None = None,
        setup_hint: str | None = None,
    ) -> PackageSpec:
        out: dict[str, Any] = {"type": output}
        if intermediate_only:
            out["intermediate_only"] = True
        return PackageSpec.model_validate(
            {
                "name": name,
                "service_name": service_name or name,
                "source": source if source is not None else {"type": "local"},
                "output": out,
                "only_for_targets": targets or {},
                "setup_hint": setup_hint,
            }
        )

    return factory


@pytest.fixture
def tar_writer() -> Callable[..., Path]:
    return write_tar


@pytest.fixture
def tar_reader() -> Callable[[Path], dict[str, bytes | None]]:
    return read_tar


@pytest.fixture
def fake_toolchain(tmp_path: Path) -> FakeToolchain:
    return FakeToolchain(tmp_path / "target" / "release")


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
