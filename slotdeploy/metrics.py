import logging
from pathlib import Path

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, write_to_textfile

logger = logging.getLogger(__name__)


class DeployMetrics:
    """Per-run metric set, exported for the node_exporter textfile collector."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.attempts_total = Counter(
            "slotdeploy_attempts_total",
            "Deployment attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "slotdeploy_duration_seconds",
            "Wall time of a deployment attempt",
            ["outcome"],
            buckets=[5, 10, 20, 30, 60, 120, 300, 600],
            registry=self.registry,
        )
        self.health_check_attempts = Histogram(
            "slotdeploy_health_check_attempts",
            "Requests needed before the target slot answered or the gate gave up",
            buckets=[1, 2, 3, 5, 10, 20, 30, 60],
            registry=self.registry,
        )
        self.releases_retained = Gauge(
            "slotdeploy_releases_retained",
            "Releases on disk after pruning",
            registry=self.registry,
        )
        self.last_success_timestamp = Gauge(
            "slotdeploy_last_success_timestamp_seconds",
            "Unix time of the last promotion",
            registry=self.registry,
        )
        self.live = Info(
            "slotdeploy_live",
            "Slot and release currently serving traffic",
            registry=self.registry,
        )

    def record_attempt(self, outcome: str, duration: float) -> None:
        self.attempts_total.labels(outcome=outcome).inc()
        self.duration_seconds.labels(outcome=outcome).observe(duration)

    def record_health(self, attempts: int) -> None:
        self.health_check_attempts.observe(attempts)

    def set_live(self, slot: str, port: int, release: str) -> None:
        self.live.info({"slot": slot, "port": str(port), "release": release})
        self.last_success_timestamp.set_to_current_time()

    def export(self, path: Path | None) -> None:
        if path is None:
            return
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
        logger.debug(f"  Metrics written to {path}")
