#!/usr/bin/env python3
"""
Blue-Green Release Orchestrator

Releases a long-running web process on a single host by alternating between
two fixed slots (A and B). The new release is started in the idle slot,
health-gated, and only then given traffic; the previous slot is stopped
after a grace delay. Any failure before promotion leaves the live slot,
the proxy and the live pointer exactly as they were.

Usage:
    python -m slotdeploy.orchestrator deploy ARTIFACT   # Run a deployment
    python -m slotdeploy.orchestrator status            # Show current state
    python -m slotdeploy.orchestrator rollback          # Swap traffic back to the idle slot
    python -m slotdeploy.orchestrator prune             # Apply release retention now
"""

import argparse
import enum
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from slotdeploy.config import Settings, load_settings
from slotdeploy.errors import (
    ConfigError,
    DeploymentError,
    HealthTimeout,
    StagingError,
)
from slotdeploy.health import HealthGate
from slotdeploy.housekeeping import StepReport, best_effort, clear_dir, disk_preflight, free_space_gb
from slotdeploy.logging_config import setup_logging
from slotdeploy.metrics import DeployMetrics
from slotdeploy.releases import Release, ReleaseStore
from slotdeploy.shell import run_command
from slotdeploy.slots import LivePointer, Slot, SlotResolver
from slotdeploy.supervisor import ProcessSupervisor, build_supervisor
from slotdeploy.traffic import NginxProxy, TrafficSwitch

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CLEANUP_FAILED = 2


class DeployState(enum.Enum):
    RESOLVING = "resolving"
    STAGING = "staging"
    STARTING = "starting"
    HEALTH_CHECKING = "health-checking"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling-back"
    SETTLING = "settling"
    DONE = "done"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    HEALTH_FAILED = "health-failed"
    ABORTED = "aborted"


@dataclass
class DeploymentAttempt:
    """One orchestration run. Lives in memory only."""

    artifact: Path
    source: Slot | None = None
    target: Slot | None = None
    source_port: int | None = None
    target_port: int | None = None
    release: Release | None = None
    previous_release_id: str | None = None
    bound: bool = False
    started: bool = False
    target_stopped: bool = False
    target_kept: bool = False
    state: DeployState = DeployState.RESOLVING
    outcome: Outcome | None = None
    error: DeploymentError | None = None
    teardown_failed: bool = False
    transitions: list[DeployState] = field(default_factory=list)
    reports: list[StepReport] = field(default_factory=list)
    started_at: float = 0.0
    duration: float = 0.0

    @property
    def promoted(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def warnings(self) -> list[StepReport]:
        return [r for r in self.reports if not r.ok]

    @property
    def exit_code(self) -> int:
        if not self.promoted:
            return EXIT_ABORTED
        if self.teardown_failed:
            return EXIT_CLEANUP_FAILED
        return EXIT_OK


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        store: ReleaseStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        gate: HealthGate | None = None,
        proxy: NginxProxy | None = None,
        metrics: DeployMetrics | None = None,
        runner=run_command,
        sleep=time.sleep,
        clock=time.monotonic,
        free_space=free_space_gb,
    ):
        self.settings = settings
        self.runner = runner
        self.sleep = sleep
        self.clock = clock
        self.free_space = free_space

        self.ports = {slot: settings.port_for(slot) for slot in Slot}
        self.pointer = LivePointer(settings.live_pointer_path, settings.slots_dir)
        self.resolver = SlotResolver(self.pointer, self.ports)
        self.store = store or ReleaseStore(
            settings.releases_dir, settings.slots_dir, settings.ENV_FILE
        )
        self.supervisor = supervisor or build_supervisor(settings, runner=runner)
        self.gate = gate or HealthGate(
            interval=settings.HEALTH_CHECK_INTERVAL,
            request_timeout=settings.HEALTH_REQUEST_TIMEOUT,
            sleep=sleep,
            clock=clock,
        )
        self.proxy = proxy or NginxProxy(
            config_path=settings.NGINX_CONFIG_PATH,
            app_name=settings.APP_NAME,
            static_root=settings.live_pointer_path / settings.STATIC_SUBDIR,
            test_command=settings.NGINX_TEST_COMMAND,
            reload_command=settings.NGINX_RELOAD_COMMAND,
            cache_max_age=settings.CACHE_MAX_AGE,
            template_path=settings.PROXY_TEMPLATE,
            timeout=settings.COMMAND_TIMEOUT,
            runner=runner,
        )
        self.switch = TrafficSwitch(self.proxy, self.pointer, self.ports)
        self.metrics = metrics or DeployMetrics()

    # ── State machine ─────────────────────────────────────────────

    def _enter(self, attempt: DeploymentAttempt, state: DeployState) -> None:
        attempt.state = state
        attempt.transitions.append(state)
        logger.info(f"[{state.value}]", extra={"state": state.value})

    def _report(self, attempt: DeploymentAttempt, report: StepReport) -> StepReport:
        attempt.reports.append(report)
        return report

    def deploy(self, artifact) -> DeploymentAttempt:
        attempt = DeploymentAttempt(artifact=Path(artifact), started_at=self.clock())

        try:
            self._resolve(attempt)

            logger.info("=" * 60)
            logger.info(
                f"DEPLOYMENT START: {attempt.source}:{attempt.source_port} -> "
                f"{attempt.target}:{attempt.target_port}"
            )
            logger.info("=" * 60)

            self._stage(attempt)
            self._start(attempt)
            self._health_check(attempt)
            self._promote(attempt)
            self._settle(attempt)
            attempt.outcome = Outcome.SUCCESS
        except HealthTimeout as e:
            attempt.outcome = Outcome.HEALTH_FAILED
            attempt.error = e
            logger.error(f"DEPLOYMENT FAILED: {e}")
            self._restore_target(attempt)
        except DeploymentError as e:
            attempt.outcome = Outcome.ABORTED
            attempt.error = e
            logger.error(f"DEPLOYMENT FAILED in {attempt.state.value}: {e}")
            self._restore_target(attempt)

        self._done(attempt)
        return attempt

    def _resolve(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.RESOLVING)
        assignment = self.resolver.resolve()
        attempt.source = assignment.current
        attempt.target = assignment.target
        attempt.source_port = assignment.current_port
        attempt.target_port = assignment.target_port
        if not assignment.pointer_present:
            logger.info("  No live slot recorded; treating slot A as current")

    def _stage(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.STAGING)
        s = self.settings
        reports = disk_preflight(
            s.BASE_DIR,
            s.MIN_FREE_SPACE_GB,
            reclaim=self._prune,
            commands=s.CLEANUP_COMMANDS,
            runner=self.runner,
            timeout=s.COMMAND_TIMEOUT,
            free_space=self.free_space,
        )
        attempt.reports.extend(reports)

        release = self.store.stage(attempt.artifact)
        attempt.release = release
        attempt.previous_release_id = self.store.bound_release_id(attempt.target)
        try:
            self.store.bind(attempt.target, release)
            attempt.bound = True
        except OSError as e:
            raise StagingError(f"Cannot bind slot {attempt.target} to {release.id}: {e}") from e

    def _start(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.STARTING)
        # A previous interrupted run may have left a process holding the port.
        self.supervisor.stop(attempt.target, force=True)
        attempt.started = True
        self.supervisor.start(attempt.target, attempt.release, attempt.target_port)

    def _health_check(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.HEALTH_CHECKING)
        s = self.settings
        target = attempt.target
        result = self.gate.check(
            attempt.target_port,
            s.HEALTH_CHECK_PATH,
            expected_status=s.HEALTH_CHECK_EXPECTED_STATUS,
            timeout_seconds=s.HEALTH_CHECK_TIMEOUT,
            is_alive=lambda: not self.supervisor.has_exited(target),
        )
        self.metrics.record_health(result.attempts)
        if result.healthy:
            return

        self._enter(attempt, DeployState.ROLLING_BACK)
        self._roll_back(attempt)
        raise HealthTimeout(attempt.target_port, result.attempts, result.last_status)

    def _roll_back(self, attempt: DeploymentAttempt) -> None:
        if not self.settings.STOP_FAILED_TARGET:
            attempt.target_kept = True
            logger.warning(
                f"  Leaving failed slot {attempt.target} running on port "
                f"{attempt.target_port}; it will be replaced by the next attempt"
            )
            return
        logger.info(f"  Stopping failed slot {attempt.target}...")
        self._report(
            attempt,
            best_effort(f"force-stop slot {attempt.target}", self.supervisor.stop, attempt.target, force=True),
        )
        attempt.target_stopped = True
        logger.info(f"  Slot {attempt.source} remains live")

    def _restore_target(self, attempt: DeploymentAttempt) -> None:
        """Put the idle slot back the way this attempt found it."""
        if not attempt.bound:
            return
        target = attempt.target
        if attempt.target_kept:
            logger.warning(
                f"  Slot {target} alias stays on failed release {attempt.release.id} "
                f"while its process is kept for inspection"
            )
            return
        if attempt.started and not attempt.target_stopped:
            self._report(
                attempt,
                best_effort(f"force-stop slot {target}", self.supervisor.stop, target, force=True),
            )
            attempt.target_stopped = True
        previous = attempt.previous_release_id
        logger.info(f"  Restoring slot {target} alias to {previous or 'nothing'}")
        self._report(
            attempt,
            best_effort(f"restore slot {target} alias", self.store.restore_binding, target, previous),
        )

    def _promote(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.PROMOTING)
        self.switch.cutover(attempt.target, attempt.target_port)

    def _settle(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.SETTLING)
        drain = self.settings.DRAIN_SECONDS
        if drain > 0:
            logger.info(f"  Draining slot {attempt.source} for {drain}s...")
            self.sleep(drain)
        try:
            self.supervisor.stop(attempt.source)
            self._report(attempt, StepReport(f"stop slot {attempt.source}", True))
        except (DeploymentError, OSError) as e:
            attempt.teardown_failed = True
            logger.error(f"  Old slot {attempt.source} could not be stopped: {e}")
            self._report(attempt, StepReport(f"stop slot {attempt.source}", False, str(e)))
        self._report(attempt, best_effort("persist process list", self.supervisor.persist))

    def _done(self, attempt: DeploymentAttempt) -> None:
        self._enter(attempt, DeployState.DONE)
        self._report(attempt, best_effort("prune releases", self._prune))
        self._report(attempt, best_effort("clear temp", clear_dir, self.settings.temp_dir))

        attempt.duration = round(self.clock() - attempt.started_at, 1)
        self.metrics.record_attempt(attempt.outcome.value, attempt.duration)
        if attempt.promoted:
            self.metrics.set_live(str(attempt.target), attempt.target_port, attempt.release.id)
        self.metrics.releases_retained.set(len(self.store.release_ids()))
        self._report(attempt, best_effort("export metrics", self.metrics.export, self.settings.METRICS_TEXTFILE))

        for warning in attempt.warnings:
            logger.warning(f"  Not completed: {warning.name} ({warning.detail})")

        logger.info("=" * 60)
        if attempt.promoted:
            suffix = " (old slot teardown FAILED)" if attempt.teardown_failed else ""
            logger.info(
                f"DEPLOYMENT COMPLETE: slot {attempt.target} is now live with release "
                f"{attempt.release.id} ({attempt.duration}s){suffix}"
            )
        else:
            logger.info(
                f"DEPLOYMENT ABORTED ({attempt.outcome.value}): slot {attempt.source} "
                f"unchanged ({attempt.duration}s)"
            )
        logger.info("=" * 60)

    def _prune(self) -> list[str]:
        return self.store.prune(self.settings.KEEP_RELEASES, self.store.protected_ids())

    def prune(self) -> list[str]:
        removed = self._prune()
        logger.info(f"Pruned {len(removed)} release(s)")
        return removed

    # ── Rollback ──────────────────────────────────────────────────

    def rollback(self, to: Slot | None = None) -> Slot:
        """Send traffic back to the idle slot, starting it first if needed."""
        live = self.pointer.read()
        if to is None:
            if live is None:
                raise DeploymentError("No live slot recorded; pass an explicit slot")
            to = live.other
        if to is live:
            raise DeploymentError(f"Slot {to} is already live")

        port = self.ports[to]
        logger.info("=" * 60)
        logger.info(f"ROLLBACK: {live if live else '-'} -> {to}")
        logger.info("=" * 60)

        release_id = self.store.bound_release_id(to)
        if release_id is None:
            raise DeploymentError(f"Slot {to} has no release to roll back to")

        started_here = False
        if not self.supervisor.is_running(to):
            logger.info(f"  Slot {to} not running, starting release {release_id}...")
            self.supervisor.start(to, self.store.get(release_id), port)
            started_here = True

        s = self.settings
        result = self.gate.check(
            port,
            s.HEALTH_CHECK_PATH,
            expected_status=s.HEALTH_CHECK_EXPECTED_STATUS,
            timeout_seconds=s.HEALTH_CHECK_TIMEOUT,
            is_alive=lambda: not self.supervisor.has_exited(to),
        )
        if not result.healthy:
            if started_here:
                best_effort(f"force-stop slot {to}", self.supervisor.stop, to, force=True)
            raise HealthTimeout(port, result.attempts, result.last_status)

        self.switch.cutover(to, port)
        logger.info("=" * 60)
        logger.info(f"ROLLBACK COMPLETE: slot {to} (release {release_id}) is now live")
        if live is not None:
            logger.info(f"  Slot {live} left running; stop it once traffic looks good")
        logger.info("=" * 60)
        return to

    # ── Status ────────────────────────────────────────────────────

    def status_report(self) -> dict:
        live = self.pointer.read()
        slots = {}
        for slot in Slot:
            slots[str(slot)] = {
                "port": self.ports[slot],
                "release": self.store.bound_release_id(slot),
                "running": self.supervisor.is_running(slot),
                "live": slot is live,
            }
        return {
            "live_slot": str(live) if live else None,
            "proxy_backend_port": self.proxy.backend_port(),
            "consistent": self.switch.consistent(),
            "slots": slots,
            "releases": self.store.release_ids(),
        }

    def status(self) -> None:
        report = self.status_report()
        print(f"\n{'=' * 50}")
        print(f"  Deployment State ({self.settings.APP_NAME})")
        print(f"{'=' * 50}")
        print(f"  Live slot:     {report['live_slot'] or 'none'}")
        print(f"  Proxy backend: {report['proxy_backend_port'] or 'not configured'}")
        if report["live_slot"] and not report["consistent"]:
            print("  WARNING: proxy backend does not match the live slot")
        print()
        for name, info in report["slots"].items():
            marker = "*" if info["live"] else " "
            running = "running" if info["running"] else "stopped"
            print(
                f"  {marker} {name}: port {info['port']}, "
                f"release {info['release'] or '-'}, {running}"
            )
        print()
        print(f"  Releases ({len(report['releases'])}): {', '.join(report['releases']) or '-'}")
        print(f"{'=' * 50}\n")


def parse_slot(value: str) -> Slot:
    try:
        return Slot(value.lower())
    except ValueError:
        raise argparse.ArgumentTypeError(f"unknown slot '{value}' (expected a or b)")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Blue-Green Release Orchestrator")
    parser.add_argument(
        "command",
        choices=["deploy", "status", "rollback", "prune"],
        help="Command to execute",
    )
    parser.add_argument("artifact", nargs="?", help="Release archive (deploy only)")
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")
    parser.add_argument("--to", type=parse_slot, help="Rollback target slot (a or b)")
    parser.add_argument("--drain-seconds", type=float, help="Grace delay before stopping the old slot")
    parser.add_argument("--health-timeout", type=int, help="Health check attempts")
    args = parser.parse_args(argv)

    overrides = {}
    if args.drain_seconds is not None:
        overrides["DRAIN_SECONDS"] = args.drain_seconds
    if args.health_timeout is not None:
        overrides["HEALTH_CHECK_TIMEOUT"] = args.health_timeout

    try:
        settings = load_settings(args.env_file, **overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return EXIT_ABORTED

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    orchestrator = Orchestrator(settings)

    try:
        if args.command == "deploy":
            if not args.artifact:
                parser.error("deploy requires an ARTIFACT")
            return orchestrator.deploy(args.artifact).exit_code
        elif args.command == "status":
            orchestrator.status()
        elif args.command == "rollback":
            orchestrator.rollback(args.to)
        elif args.command == "prune":
            orchestrator.prune()
    except DeploymentError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return EXIT_ABORTED
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
