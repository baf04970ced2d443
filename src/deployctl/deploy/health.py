"""Poll health endpoints until they report ready."""

import time
from typing import Callable

import httpx

from deployctl.core.cancellation import CancellationToken
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import HealthCheck, HealthResult

logger = StructuredLogger(__name__)


class HealthVerifier:
    """Repeatedly probes a HealthCheck with a fixed backoff.

    An unhealthy outcome is returned, never raised: running out of attempts is
    an expected, reportable result. Each call owns its own loop state, so
    several targets can be polled from different threads at once.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._sleep = sleep

    def probe(self, check: HealthCheck) -> tuple[int | None, str, str | None]:
        """Issue a single request.

        Returns:
            (status code or None, body text, error message or None)
        """
        try:
            if self._client is not None:
                response = self._client.get(check.url, timeout=check.timeout)
            else:
                response = httpx.get(
                    check.url,
                    timeout=check.timeout,
                    verify=check.verify_tls,
                    follow_redirects=True,
                )
            return response.status_code, response.text, None
        except httpx.HTTPError as e:
            return None, "", f"{type(e).__name__}: {e}"

    def wait_for_healthy(
        self,
        check: HealthCheck,
        cancel: CancellationToken | None = None,
    ) -> HealthResult:
        """Poll until healthy or ``max_attempts`` probes have been made.

        Sleeps ``poll_interval`` between attempts only, so the total time spent
        sleeping stays below ``poll_interval * max_attempts``.
        """
        log = logger.bind(target=check.target or check.url)
        last_status: int | None = None
        last_error: str | None = None
        attempts = 0

        for attempt in range(1, check.max_attempts + 1):
            attempts = attempt
            status, body, error = self.probe(check)
            last_status, last_error = status, error

            if status is not None and check.accepts(status, body):
                log.info(f"Healthy after {attempt} attempt(s)", url=check.url, status=status)
                return HealthResult(
                    healthy=True,
                    attempts=attempt,
                    last_status=status,
                    url=check.url,
                )

            if error is None:
                low, high = check.expected_status
                last_error = f"HTTP {status} (expected {low}-{high}"
                last_error += f" with '{check.expected_body}')" if check.expected_body else ")"

            log.debug(
                f"Not healthy yet ({attempt}/{check.max_attempts}): {last_error}",
                url=check.url,
            )

            if attempt < check.max_attempts and self._pause(check.poll_interval, cancel):
                last_error = "cancelled while waiting for health"
                break

        log.warning(f"Unhealthy after {attempts} attempt(s): {last_error}", url=check.url)
        return HealthResult(
            healthy=False,
            attempts=attempts,
            last_status=last_status,
            last_error=last_error,
            url=check.url,
        )

    def _pause(self, seconds: float, cancel: CancellationToken | None) -> bool:
        """Sleep between attempts; True means the run was cancelled."""
        if cancel is not None:
            return cancel.wait(seconds)
        if seconds > 0:
            self._sleep(seconds)
        return False
