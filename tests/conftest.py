import io
import subprocess
import tarfile
from pathlib import Path

import pytest
import requests

from slotdeploy.config import load_settings
from slotdeploy.errors import CommandError, SupervisorError
from slotdeploy.health import HealthGate
from slotdeploy.orchestrator import Orchestrator
from slotdeploy.supervisor import ProcessHandle, ProcessSupervisor, process_name


def build_artifact(directory: Path, timestamp: str, build_mode: str = "standalone",
                   files: dict | None = None, meta: str | None = None) -> Path:
    """Write a release archive the way the packaging step produces it."""
    archive = directory / f"app-{timestamp}.tar.gz"
    if meta is None:
        meta = (
            f"TIMESTAMP={timestamp}\n"
            f"BUILD_MODE={build_mode}\n"
            "NODE_VERSION=v20.11.0\n"
            "PACKAGE_MANAGER=npm\n"
            "GIT_COMMIT=abc1234\n"
        )
    if files is None:
        files = {"server.js": "// entry\n", ".next/static/app.js": "// asset\n"}

    with tarfile.open(archive, "w:gz") as tar:
        entries = dict(files)
        if meta is not False:
            entries["DEPLOY_META"] = meta
        for name, text in entries.items():
            data = text.encode()
            info = tarfile.TarInfo(f"./{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return archive


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code


class FakeSession:
    """Scripted health endpoint. None means connection refused; last entry repeats."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.urls = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.urls.append(url)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if status is None:
            raise requests.ConnectionError("connection refused")
        return FakeResponse(status)


class FakeRunner:
    def __init__(self):
        self.calls = []
        self.failures = {}
        self.outputs = {}

    def fail(self, needle: str, rc: int = 1, stderr: str = "error") -> None:
        self.failures[needle] = (rc, stderr)

    def __call__(self, cmd, timeout=30, check=True, cwd=None):
        cmd_str = cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)
        self.calls.append(cmd_str)
        for needle, (rc, stderr) in self.failures.items():
            if needle in cmd_str:
                if check:
                    raise CommandError(cmd_str, rc, stderr)
                return subprocess.CompletedProcess(cmd_str, rc, "", stderr)
        stdout = next((out for needle, out in self.outputs.items() if needle in cmd_str), "")
        return subprocess.CompletedProcess(cmd_str, 0, stdout, "")

    def count(self, needle: str) -> int:
        return sum(1 for c in self.calls if needle in c)


class FakeSupervisor(ProcessSupervisor):
    def __init__(self, app_name: str, slots_dir: Path):
        super().__init__(app_name, slots_dir)
        self.calls = []
        self.running = set()
        self.fail_start = set()
        self.fail_stop = set()
        self.persist_error = None

    def start(self, slot, release, port):
        self.calls.append(("start", slot, release.id, port))
        if slot in self.fail_start:
            raise SupervisorError(f"{process_name(self.app_name, slot)} failed to start")
        self.running.add(slot)
        return ProcessHandle(name=process_name(self.app_name, slot), slot=slot, port=port)

    def stop(self, slot, force=False):
        self.calls.append(("stop", slot, force))
        if slot in self.fail_stop:
            raise SupervisorError(f"{process_name(self.app_name, slot)} refused to stop")
        self.running.discard(slot)

    def is_running(self, slot):
        return slot in self.running

    def persist(self):
        self.calls.append(("persist",))
        if self.persist_error:
            raise self.persist_error


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = dict(
            APP_NAME="shop",
            BASE_DIR=tmp_path / "app",
            NGINX_CONFIG_PATH=tmp_path / "nginx" / "shop.conf",
            LOG_FILE=tmp_path / "deploy.log",
            MIN_FREE_SPACE_GB=0,
            CLEANUP_COMMANDS=[],
        )
        values.update(overrides)
        return load_settings(None, **values)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def artifacts(tmp_path):
    directory = tmp_path / "artifacts"
    directory.mkdir()

    def _make(timestamp: str, **kwargs) -> Path:
        return build_artifact(directory, timestamp, **kwargs)
    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_orchestrator(make_settings, clock, runner):
    def _make(statuses=(200,), free_space=lambda path: 100.0, **overrides):
        s = make_settings(**overrides)
        supervisor = FakeSupervisor(s.APP_NAME, s.slots_dir)
        gate = HealthGate(session=FakeSession(statuses), sleep=clock.sleep, clock=clock)
        return Orchestrator(
            s,
            supervisor=supervisor,
            gate=gate,
            runner=runner,
            sleep=clock.sleep,
            clock=clock,
            free_space=free_space,
        )
    return _make
