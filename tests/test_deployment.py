"""
Deployment cycle tests.

Drive the orchestrator through full blue-green cycles with a scripted health
endpoint, a fake process supervisor and a fake nginx, and verify that:
1. Slots alternate and the live pointer follows the promoted slot
2. Failures before promotion leave the pointer and proxy untouched
3. Post-promotion cleanup problems are reported, not hidden
"""

import pytest

from slotdeploy.errors import CommandError, DeploymentError, HealthTimeout, PruneError
from slotdeploy.orchestrator import (
    EXIT_ABORTED,
    EXIT_CLEANUP_FAILED,
    EXIT_OK,
    DeployState,
    Outcome,
)
from slotdeploy.slots import Slot
from tests.conftest import FakeSession


def test_first_deployment_goes_to_slot_b(make_orchestrator, artifacts, clock):
    orch = make_orchestrator(statuses=[None, 503, 200], HEALTH_CHECK_TIMEOUT=30)

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.exit_code == EXIT_OK
    assert attempt.source is Slot.A and attempt.target is Slot.B
    assert orch.pointer.read() is Slot.B
    # two one-second waits before the third request succeeds, then the grace delay
    assert clock.sleeps == [1.0, 1.0, 10]
    assert orch.supervisor.calls[-2:] == [("stop", Slot.A, False), ("persist",)]
    assert orch.gate.session.urls[0] == "http://localhost:3001/api/health"
    assert attempt.transitions == [
        DeployState.RESOLVING,
        DeployState.STAGING,
        DeployState.STARTING,
        DeployState.HEALTH_CHECKING,
        DeployState.PROMOTING,
        DeployState.SETTLING,
        DeployState.DONE,
    ]


def test_successive_deployments_alternate(make_orchestrator, artifacts):
    orch = make_orchestrator()
    promoted = []
    for i in range(1, 5):
        before = orch.resolver.resolve()
        attempt = orch.deploy(artifacts(f"2024010100000{i}"))
        assert attempt.promoted
        assert attempt.target is before.target
        if promoted:
            assert attempt.source is promoted[-1]
        promoted.append(attempt.target)
    assert promoted == [Slot.B, Slot.A, Slot.B, Slot.A]


def test_proxy_and_pointer_agree_after_promotion(make_orchestrator, artifacts):
    orch = make_orchestrator()
    for i in range(1, 4):
        orch.deploy(artifacts(f"2024010100000{i}"))
        live = orch.pointer.read()
        assert orch.proxy.backend_port() == orch.ports[live]
        assert orch.switch.consistent()


def test_static_assets_are_served_through_the_live_pointer(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    config = orch.settings.NGINX_CONFIG_PATH.read_text()
    assert f"alias {orch.settings.live_pointer_path}/.next/static;" in config
    assert (orch.settings.live_pointer_path / ".next" / "static" / "app.js").is_file()


def test_health_timeout_keeps_current_slot_live(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    pointer_before = orch.pointer.raw()
    config_before = orch.settings.NGINX_CONFIG_PATH.read_text()

    orch.gate.session = FakeSession([503])
    orch.settings.HEALTH_CHECK_TIMEOUT = 10
    attempt = orch.deploy(artifacts("20240101000002"))

    assert attempt.outcome is Outcome.HEALTH_FAILED
    assert attempt.exit_code == EXIT_ABORTED
    assert attempt.error.attempts == 10
    assert attempt.error.last_status == 503
    assert DeployState.ROLLING_BACK in attempt.transitions
    assert DeployState.PROMOTING not in attempt.transitions
    assert ("stop", Slot.A, True) in orch.supervisor.calls
    assert orch.pointer.raw() == pointer_before
    assert orch.settings.NGINX_CONFIG_PATH.read_text() == config_before
    assert orch.supervisor.is_running(Slot.B)
    assert not orch.supervisor.is_running(Slot.A)


def test_failed_target_can_be_left_running(make_orchestrator, artifacts, caplog):
    orch = make_orchestrator(statuses=[500], HEALTH_CHECK_TIMEOUT=3, STOP_FAILED_TARGET=False)

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.outcome is Outcome.HEALTH_FAILED
    assert orch.supervisor.is_running(Slot.B)
    assert "Leaving failed slot B running on port 3001" in caplog.text
    assert orch.pointer.raw() is None
    assert orch.store.bound_release_id(Slot.B) == "20240101000001"


def test_target_exiting_ends_health_check_early(make_orchestrator, artifacts):
    orch = make_orchestrator(statuses=[None], HEALTH_CHECK_TIMEOUT=30)
    original_start = orch.supervisor.start

    def start_then_crash(slot, release, port):
        handle = original_start(slot, release, port)
        orch.supervisor.running.discard(slot)
        return handle

    orch.supervisor.start = start_then_crash
    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.outcome is Outcome.HEALTH_FAILED
    assert attempt.error.attempts == 1


def test_staging_failure_touches_nothing(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    pointer_before = orch.pointer.raw()
    calls_before = list(orch.supervisor.calls)

    attempt = orch.deploy(artifacts("20240101000002", meta="BUILD_MODE=standalone\n"))

    assert attempt.outcome is Outcome.ABORTED
    assert attempt.exit_code == EXIT_ABORTED
    assert attempt.transitions[-2:] == [DeployState.STAGING, DeployState.DONE]
    assert orch.supervisor.calls == calls_before
    assert orch.pointer.raw() == pointer_before
    assert orch.store.bound_release_id(Slot.A) is None


def test_start_failure_touches_nothing(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    pointer_before = orch.pointer.raw()
    orch.supervisor.fail_start.add(Slot.A)

    attempt = orch.deploy(artifacts("20240101000002"))

    assert attempt.outcome is Outcome.ABORTED
    assert attempt.state is DeployState.DONE
    assert DeployState.HEALTH_CHECKING not in attempt.transitions
    assert orch.pointer.raw() == pointer_before
    assert orch.supervisor.is_running(Slot.B)
    assert orch.store.bound_release_id(Slot.A) is None
    assert orch.supervisor.calls[-1] == ("stop", Slot.A, True)


def test_stale_target_process_is_stopped_before_start(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.supervisor.running.add(Slot.B)

    orch.deploy(artifacts("20240101000001"))

    starting = orch.supervisor.calls[:2]
    assert starting == [("stop", Slot.B, True), ("start", Slot.B, "20240101000001", 3001)]


def test_rejected_proxy_config_leaves_pointer_alone(make_orchestrator, artifacts, runner):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    pointer_before = orch.pointer.raw()
    config_before = orch.settings.NGINX_CONFIG_PATH.read_text()

    runner.fail("nginx -t", stderr="emerg: unexpected '}'")
    attempt = orch.deploy(artifacts("20240101000002"))

    assert attempt.outcome is Outcome.ABORTED
    assert "Proxy config test failed" in str(attempt.error)
    assert orch.pointer.raw() == pointer_before
    assert orch.settings.NGINX_CONFIG_PATH.read_text() == config_before
    assert not orch.supervisor.is_running(Slot.A)
    assert orch.store.bound_release_id(Slot.A) is None
    assert DeployState.SETTLING not in attempt.transitions


def test_old_slot_teardown_failure_is_surfaced(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.supervisor.fail_stop.add(Slot.A)
    orch.supervisor.running.add(Slot.A)

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.promoted
    assert attempt.exit_code == EXIT_CLEANUP_FAILED
    assert orch.pointer.read() is Slot.B
    assert [r.name for r in attempt.warnings] == ["stop slot A"]


def test_prune_failure_is_reported_but_not_fatal(make_orchestrator, artifacts, monkeypatch):
    orch = make_orchestrator()

    def broken_prune(keep, protected):
        raise PruneError("Could not remove releases: 20230101000000: permission denied")

    monkeypatch.setattr(orch.store, "prune", broken_prune)
    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.exit_code == EXIT_OK
    failed = {r.name: r.detail for r in attempt.warnings}
    assert "permission denied" in failed["prune releases"]


def test_persist_failure_is_reported(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.supervisor.persist_error = CommandError("pm2 save", 1, "daemon not running")

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.exit_code == EXIT_OK
    assert [r.name for r in attempt.warnings] == ["persist process list"]


def test_retention_keeps_releases_bound_to_slots(make_orchestrator, artifacts):
    orch = make_orchestrator(KEEP_RELEASES=1)
    for i in range(1, 6):
        assert orch.deploy(artifacts(f"2024010100000{i}")).promoted

    remaining = orch.store.release_ids()
    assert remaining == ["20240101000004", "20240101000005"]
    assert orch.store.protected_ids() == set(remaining)


def test_failed_attempt_still_applies_retention(make_orchestrator, artifacts):
    orch = make_orchestrator(KEEP_RELEASES=1)
    for i in range(1, 4):
        orch.deploy(artifacts(f"2024010100000{i}"))
    orch.gate.session = FakeSession([503])
    orch.settings.HEALTH_CHECK_TIMEOUT = 2

    attempt = orch.deploy(artifacts("20240101000004"))

    assert not attempt.promoted
    assert orch.store.bound_release_id(Slot.A) == "20240101000002"
    # 0002 and 0003 back the two slots; 0004 is newest and within the keep count
    assert orch.store.release_ids() == ["20240101000002", "20240101000003", "20240101000004"]

    orch.gate.session = FakeSession([200])
    orch.deploy(artifacts("20240101000005"))
    assert orch.store.release_ids() == ["20240101000003", "20240101000005"]


def test_relative_base_dir_still_alternates(make_orchestrator, artifacts, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    orch = make_orchestrator(BASE_DIR="app")
    assert orch.settings.BASE_DIR == tmp_path.resolve() / "app"

    first = orch.deploy(artifacts("20240101000001"))
    calls_before = len(orch.supervisor.calls)
    second = orch.deploy(artifacts("20240101000002"))

    assert (first.target, second.target) == (Slot.B, Slot.A)
    assert orch.pointer.read() is Slot.A
    assert ("stop", Slot.B, True) not in orch.supervisor.calls[calls_before:]
    assert orch.store.protected_ids() == {"20240101000001", "20240101000002"}


def test_unwritable_release_dir_aborts_cleanly(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.settings.BASE_DIR.mkdir(parents=True)
    orch.settings.releases_dir.write_text("not a directory")

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.outcome is Outcome.ABORTED
    assert attempt.exit_code == EXIT_ABORTED
    assert "Cannot create release directories" in str(attempt.error)
    assert attempt.state is DeployState.DONE
    assert orch.supervisor.calls == []


def test_low_disk_aborts_before_staging(make_orchestrator, artifacts, runner):
    orch = make_orchestrator(
        free_space=lambda path: 0.5,
        MIN_FREE_SPACE_GB=3,
        CLEANUP_COMMANDS=["npm cache clean --force"],
    )

    attempt = orch.deploy(artifacts("20240101000001"))

    assert attempt.outcome is Outcome.ABORTED
    assert "Insufficient disk space" in str(attempt.error)
    assert runner.count("npm cache clean") == 1
    assert orch.store.release_ids() == []
    assert orch.supervisor.calls == []


def test_metrics_textfile_is_written(make_orchestrator, artifacts, tmp_path):
    textfile = tmp_path / "metrics" / "slotdeploy.prom"
    orch = make_orchestrator(METRICS_TEXTFILE=textfile)

    orch.deploy(artifacts("20240101000001"))

    text = textfile.read_text()
    assert 'slotdeploy_attempts_total{outcome="success"} 1.0' in text
    assert 'slot="B"' in text


def test_temp_dir_is_cleared(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.settings.temp_dir.mkdir(parents=True)
    (orch.settings.temp_dir / "upload.tar.gz").write_text("x")

    orch.deploy(artifacts("20240101000001"))

    assert list(orch.settings.temp_dir.iterdir()) == []


# ── Rollback ─────────────────────────────────────────────────────


def test_rollback_restarts_previous_slot_and_switches(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    orch.deploy(artifacts("20240101000002"))
    assert orch.pointer.read() is Slot.A
    assert not orch.supervisor.is_running(Slot.B)

    target = orch.rollback()

    assert target is Slot.B
    assert orch.pointer.read() is Slot.B
    assert ("start", Slot.B, "20240101000001", 3001) in orch.supervisor.calls
    assert orch.proxy.backend_port() == 3001
    assert orch.supervisor.is_running(Slot.A)


def test_rollback_after_failed_attempt_uses_last_good_release(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    orch.deploy(artifacts("20240101000002"))
    orch.gate.session = FakeSession([503])
    orch.settings.HEALTH_CHECK_TIMEOUT = 2

    failed = orch.deploy(artifacts("20240101000003"))

    assert failed.target is Slot.B and not failed.promoted
    assert orch.store.bound_release_id(Slot.B) == "20240101000001"
    assert "20240101000001" in orch.store.protected_ids()

    orch.gate.session = FakeSession([200])
    assert orch.rollback() is Slot.B
    starts = [c for c in orch.supervisor.calls if c[0] == "start"]
    assert starts[-1] == ("start", Slot.B, "20240101000001", 3001)


def test_rollback_aborts_when_previous_slot_is_unhealthy(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))
    orch.deploy(artifacts("20240101000002"))
    orch.gate.session = FakeSession([502])
    orch.settings.HEALTH_CHECK_TIMEOUT = 3

    with pytest.raises(HealthTimeout):
        orch.rollback()

    assert orch.pointer.read() is Slot.A
    assert not orch.supervisor.is_running(Slot.B)


def test_rollback_without_live_slot(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(DeploymentError, match="No live slot"):
        orch.rollback()


def test_status_report(make_orchestrator, artifacts):
    orch = make_orchestrator()
    orch.deploy(artifacts("20240101000001"))

    report = orch.status_report()

    assert report["live_slot"] == "B"
    assert report["proxy_backend_port"] == 3001
    assert report["consistent"] is True
    assert report["slots"]["B"] == {
        "port": 3001, "release": "20240101000001", "running": True, "live": True,
    }
    assert report["slots"]["A"]["release"] is None
    assert report["releases"] == ["20240101000001"]
