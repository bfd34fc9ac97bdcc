import logging
import time
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthResult:
    healthy: bool
    attempts: int
    last_status: int | None
    elapsed: float
    process_exited: bool = False


class HealthGate:
    """Polls a slot's health endpoint until it answers with the expected status.

    A refused connection and a wrong status are treated the same way: the
    process may still be starting, so the gate keeps polling until the
    attempt budget is spent. The only early exit is the process dying.
    """

    def __init__(
        self,
        interval: float = 1.0,
        request_timeout: float = 5.0,
        host: str = "localhost",
        session: requests.Session | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.interval = interval
        self.request_timeout = request_timeout
        self.host = host
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock

    def url(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    def check_once(self, port: int, path: str) -> int | None:
        """Status code of a single GET, or None if no response arrived."""
        try:
            r = self.session.get(
                self.url(port, path),
                timeout=self.request_timeout,
                allow_redirects=False,
            )
            return r.status_code
        except requests.RequestException as e:
            logger.debug(f"  {self.url(port, path)}: {type(e).__name__}")
            return None

    def check(
        self,
        port: int,
        path: str,
        expected_status: int = 200,
        timeout_seconds: int = 30,
        is_alive=None,
    ) -> HealthResult:
        start = self.clock()
        status = None
        for attempt in range(1, timeout_seconds + 1):
            status = self.check_once(port, path)
            if status == expected_status:
                elapsed = round(self.clock() - start, 1)
                logger.info(
                    f"  Health OK after {attempt} attempts ({elapsed}s)",
                    extra={"port": port, "attempt": attempt, "status_code": status},
                )
                return HealthResult(True, attempt, status, elapsed)

            logger.info(
                f"  Poll {attempt}/{timeout_seconds}: "
                f"{status if status is not None else 'no response'}",
                extra={"port": port, "attempt": attempt, "status_code": status},
            )
            if is_alive is not None and not is_alive():
                logger.warning(f"  Process on port {port} exited during health check")
                return HealthResult(
                    False, attempt, status, round(self.clock() - start, 1), process_exited=True
                )
            if attempt < timeout_seconds:
                self.sleep(self.interval)

        elapsed = round(self.clock() - start, 1)
        logger.warning(f"  Health check gave up after {timeout_seconds} attempts ({elapsed}s)")
        return HealthResult(False, timeout_seconds, status, elapsed)
