"""
Process supervisor adapters.

Exactly one process per slot, named ``<app>-<slot>``, runs from the slot's
working-dir alias and listens on the slot's fixed port. ``stop`` is
idempotent: stopping a slot with no process is not an error.
"""

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from slotdeploy.errors import CommandError, SupervisorError
from slotdeploy.releases import BuildMode, Release
from slotdeploy.shell import run_command
from slotdeploy.slots import Slot, slot_dir

logger = logging.getLogger(__name__)

# pm2 process states. Anything else ("waiting restart", ...) is still coming up.
PM2_UP = ("online", "launching")
PM2_DOWN = ("stopped", "stopping", "errored")


@dataclass(frozen=True)
class ProcessDescriptor:
    name: str
    working_dir: Path
    entrypoint: str
    args: list[str] = field(default_factory=list)
    port: int = 0
    env_file: Path | None = None


@dataclass(frozen=True)
class ProcessHandle:
    name: str
    slot: Slot
    port: int
    pid: int | None = None


def process_name(app_name: str, slot: Slot) -> str:
    return f"{app_name}-{slot.value}"


def describe(app_name: str, slots_dir: Path, slot: Slot, release: Release, port: int) -> ProcessDescriptor:
    """Build the process descriptor for ``release`` running in ``slot``.

    The working directory is the slot alias, not the release path, so the
    process keeps a stable cwd across releases.
    """
    workdir = slot_dir(slots_dir, slot)
    if release.build_mode is BuildMode.STANDALONE:
        if not (release.path / "server.js").is_file():
            raise SupervisorError(f"Release {release.id}: standalone bundle has no server.js")
        entrypoint, args = str(workdir / "server.js"), []
    elif release.build_mode is BuildMode.REGULAR:
        local_cli = release.path / "node_modules" / ".bin" / "next"
        if local_cli.exists():
            entrypoint = str(workdir / "node_modules" / ".bin" / "next")
        elif shutil.which("next"):
            entrypoint = "next"
        else:
            raise SupervisorError(f"Release {release.id}: Next.js CLI not found")
        args = ["start", "-p", str(port)]
    else:
        raise SupervisorError(f"Release {release.id}: unknown build mode")

    return ProcessDescriptor(
        name=process_name(app_name, slot),
        working_dir=workdir,
        entrypoint=entrypoint,
        args=args,
        port=port,
        env_file=workdir / ".env",
    )


def read_env_file(path: Path | None) -> dict[str, str]:
    env = {}
    if path is None or not path.is_file():
        return env
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        env[key.strip().removeprefix("export ").strip()] = value.strip().strip("'\"")
    return env


class ProcessSupervisor:
    """Interface shared by the pm2 and local adapters."""

    def __init__(self, app_name: str, slots_dir: Path):
        self.app_name = app_name
        self.slots_dir = Path(slots_dir)

    def describe(self, slot: Slot, release: Release, port: int) -> ProcessDescriptor:
        return describe(self.app_name, self.slots_dir, slot, release, port)

    def start(self, slot: Slot, release: Release, port: int) -> ProcessHandle:
        raise NotImplementedError

    def stop(self, slot: Slot, force: bool = False) -> None:
        raise NotImplementedError

    def is_running(self, slot: Slot) -> bool:
        raise NotImplementedError

    def has_exited(self, slot: Slot) -> bool:
        """True only when the slot's process is known to be gone.

        The health gate stops early on this, so adapters that cannot tell
        "still starting" from "dead" should answer False.
        """
        return not self.is_running(slot)

    def persist(self) -> None:
        """Save the process list so it survives a host reboot, where supported."""
        return None


class Pm2Supervisor(ProcessSupervisor):
    def __init__(
        self,
        app_name: str,
        slots_dir: Path,
        base_dir: Path,
        logs_dir: Path,
        max_memory_restart: str = "500M",
        timeout: int = 30,
        runner=run_command,
    ):
        super().__init__(app_name, slots_dir)
        self.base_dir = Path(base_dir)
        self.logs_dir = Path(logs_dir)
        self.max_memory_restart = max_memory_restart
        self.timeout = timeout
        self.runner = runner

    def ecosystem_path(self, slot: Slot) -> Path:
        return self.base_dir / f"ecosystem-{slot.value}.config.js"

    def write_ecosystem(self, slot: Slot, desc: ProcessDescriptor) -> Path:
        app = {
            "name": desc.name,
            "script": desc.entrypoint,
            "args": " ".join(desc.args),
            "cwd": str(desc.working_dir),
            "instances": 1,
            "exec_mode": "cluster",
            "env": {"PORT": str(desc.port), "NODE_ENV": "production"},
            "env_file": str(desc.env_file) if desc.env_file else None,
            "max_memory_restart": self.max_memory_restart,
            "error_file": str(self.logs_dir / f"{slot.value}-error.log"),
            "out_file": str(self.logs_dir / f"{slot.value}-out.log"),
            "merge_logs": True,
            "time": True,
        }
        path = self.ecosystem_path(slot)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(
            "module.exports = " + json.dumps({"apps": [app]}, indent=2) + ";\n"
        )
        return path

    def start(self, slot: Slot, release: Release, port: int) -> ProcessHandle:
        desc = self.describe(slot, release, port)
        try:
            ecosystem = self.write_ecosystem(slot, desc)
            self.runner(["pm2", "start", str(ecosystem)], timeout=self.timeout)
        except OSError as e:
            raise SupervisorError(f"Cannot write pm2 config for {desc.name}: {e}") from e
        except CommandError as e:
            raise SupervisorError(f"pm2 could not start {desc.name}: {e}") from e
        logger.info(f"  Started {desc.name} on port {port}", extra={"slot": str(slot), "port": port})
        return ProcessHandle(name=desc.name, slot=slot, port=port)

    def stop(self, slot: Slot, force: bool = False) -> None:
        # pm2 delete escalates to SIGKILL after its kill_timeout either way.
        name = process_name(self.app_name, slot)
        try:
            result = self.runner(["pm2", "delete", name], timeout=self.timeout, check=False)
        except CommandError as e:
            raise SupervisorError(f"pm2 could not stop {name}: {e}") from e
        if result.returncode == 0:
            logger.info(f"  Stopped {name}", extra={"slot": str(slot)})
            return
        output = f"{result.stdout}\n{result.stderr}".lower()
        if "not found" in output:
            logger.debug(f"  {name} was not running")
            return
        raise SupervisorError(
            f"pm2 could not stop {name} (rc={result.returncode}): {result.stderr.strip()}"
        )

    def _apps(self) -> list[dict] | None:
        """Parsed `pm2 jlist`, or None when pm2 could not be asked."""
        try:
            result = self.runner(["pm2", "jlist"], timeout=self.timeout, check=False)
        except CommandError:
            return None
        if result.returncode != 0:
            return None
        try:
            apps = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return None
        return apps if isinstance(apps, list) else None

    def _status(self, apps: list[dict], slot: Slot) -> str | None:
        name = process_name(self.app_name, slot)
        for app in apps:
            if app.get("name") == name:
                return app.get("pm2_env", {}).get("status", "unknown")
        return None

    def is_running(self, slot: Slot) -> bool:
        apps = self._apps()
        return apps is not None and self._status(apps, slot) in PM2_UP

    def has_exited(self, slot: Slot) -> bool:
        apps = self._apps()
        if apps is None:
            logger.debug("  pm2 jlist unavailable, assuming the process is still starting")
            return False
        status = self._status(apps, slot)
        return status is None or status in PM2_DOWN

    def persist(self) -> None:
        self.runner(["pm2", "save"], timeout=self.timeout)


class LocalSupervisor(ProcessSupervisor):
    """Runs slot processes directly, tracking them with pid files."""

    def __init__(
        self,
        app_name: str,
        slots_dir: Path,
        run_dir: Path,
        logs_dir: Path,
        node_bin: str = "node",
        stop_timeout: float = 10,
    ):
        super().__init__(app_name, slots_dir)
        self.run_dir = Path(run_dir)
        self.logs_dir = Path(logs_dir)
        self.node_bin = node_bin
        self.stop_timeout = stop_timeout

    def pid_file(self, slot: Slot) -> Path:
        return self.run_dir / f"{process_name(self.app_name, slot)}.pid"

    def _command(self, desc: ProcessDescriptor) -> list[str]:
        if desc.entrypoint.endswith(".js"):
            return [self.node_bin, desc.entrypoint, *desc.args]
        return [desc.entrypoint, *desc.args]

    def start(self, slot: Slot, release: Release, port: int) -> ProcessHandle:
        desc = self.describe(slot, release, port)
        env = dict(os.environ)
        env.update(read_env_file(desc.env_file))
        env.update({"PORT": str(port), "NODE_ENV": "production"})

        out_log = self.logs_dir / f"{slot.value}-out.log"
        err_log = self.logs_dir / f"{slot.value}-error.log"
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            with open(out_log, "ab") as out, open(err_log, "ab") as err:
                proc = subprocess.Popen(
                    self._command(desc),
                    cwd=str(desc.working_dir),
                    env=env,
                    stdout=out,
                    stderr=err,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            raise SupervisorError(f"Could not start {desc.name}: {e}") from e

        if proc.poll() is not None:
            raise SupervisorError(f"{desc.name} exited immediately (rc={proc.returncode})")

        try:
            create_time = psutil.Process(proc.pid).create_time()
            self.pid_file(slot).write_text(f"{proc.pid} {create_time}\n")
        except psutil.NoSuchProcess as e:
            raise SupervisorError(f"{desc.name} exited immediately") from e
        except (psutil.Error, OSError) as e:
            proc.kill()
            proc.wait(timeout=self.stop_timeout)
            raise SupervisorError(f"Cannot record pid of {desc.name}: {e}") from e
        logger.info(
            f"  Started {desc.name} (pid {proc.pid}) on port {port}",
            extra={"slot": str(slot), "port": port},
        )
        return ProcessHandle(name=desc.name, slot=slot, port=port, pid=proc.pid)

    def _process(self, slot: Slot) -> psutil.Process | None:
        path = self.pid_file(slot)
        try:
            pid_text, _, created = path.read_text().strip().partition(" ")
            pid = int(pid_text)
        except (OSError, ValueError):
            return None
        try:
            proc = psutil.Process(pid)
            # A recycled pid belongs to somebody else.
            if created and abs(proc.create_time() - float(created)) > 1:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                proc.wait(timeout=0)
                return None
            return proc
        except (psutil.NoSuchProcess, psutil.TimeoutExpired, ValueError):
            return None

    def stop(self, slot: Slot, force: bool = False) -> None:
        name = process_name(self.app_name, slot)
        proc = self._process(slot)
        if proc is None:
            self.pid_file(slot).unlink(missing_ok=True)
            logger.debug(f"  {name} was not running")
            return
        try:
            procs = [proc] + proc.children(recursive=True)
            if force:
                for p in procs:
                    p.kill()
            else:
                for p in procs:
                    p.terminate()
            _, alive = psutil.wait_procs(procs, timeout=self.stop_timeout)
            for p in alive:
                logger.warning(f"  {name}: pid {p.pid} ignored SIGTERM, killing")
                p.kill()
            psutil.wait_procs(alive, timeout=self.stop_timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            raise SupervisorError(f"Not permitted to stop {name}: {e}") from e
        self.pid_file(slot).unlink(missing_ok=True)
        logger.info(f"  Stopped {name}", extra={"slot": str(slot)})

    def is_running(self, slot: Slot) -> bool:
        return self._process(slot) is not None


def build_supervisor(settings, runner=run_command) -> ProcessSupervisor:
    if settings.SUPERVISOR == "local":
        return LocalSupervisor(
            app_name=settings.APP_NAME,
            slots_dir=settings.slots_dir,
            run_dir=settings.run_dir,
            logs_dir=settings.logs_dir,
            node_bin=settings.NODE_BIN,
        )
    return Pm2Supervisor(
        app_name=settings.APP_NAME,
        slots_dir=settings.slots_dir,
        base_dir=settings.BASE_DIR,
        logs_dir=settings.logs_dir,
        max_memory_restart=settings.MAX_MEMORY_RESTART,
        timeout=settings.COMMAND_TIMEOUT,
        runner=runner,
    )
