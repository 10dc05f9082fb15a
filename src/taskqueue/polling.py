"""Client side of the job status protocol: poll a status URL until the job settles."""
from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional, Protocol

from taskqueue.errors import JobFailedError, JobStatusError, PollTimeoutError, TransportError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
ERROR_INTERVAL = 2.0
MAX_ATTEMPTS = 600


class StatusTransport(Protocol):
    def get_json(self, url: str) -> Dict[str, Any]:
        """Fetch ``url`` and decode the JSON body; raise ``TransportError`` on failure."""
        ...


class UrllibTransport:
    """Fetches status documents with ``urllib.request``."""

    def __init__(self, base_url: str = "", timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def get_json(self, url: str) -> Dict[str, Any]:
        req = urllib.request.Request(self._url(url), headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            # error statuses still carry a status document (e.g. 404 for an evicted job)
            body = exc.read()
            if not body:
                raise TransportError(f"HTTP {exc.code} from {url}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise TransportError(f"cannot reach {url}: {exc}") from exc
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise TransportError(f"invalid JSON from {url}") from exc


class JobStatusPoller:
    """
    Polls a job's status URL at a fixed cadence until it is terminal.

    Args:
        transport: Object with ``get_json(url)``.
        sleep: Sleep function, injectable for tests.
        interval: Seconds between polls.
        error_interval: Seconds to wait after a transport error.
        max_attempts: Polls before giving up with ``PollTimeoutError``.
    """

    def __init__(
        self,
        transport: StatusTransport,
        sleep: Callable[[float], None] = time.sleep,
        interval: float = POLL_INTERVAL,
        error_interval: float = ERROR_INTERVAL,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.transport = transport
        self.sleep = sleep
        self.interval = interval
        self.error_interval = error_interval
        self.max_attempts = max_attempts

    def wait(self, status_url: str, on_progress: Optional[Callable[[int], Any]] = None) -> Any:
        """Return the job's result, or raise ``JobFailedError`` / ``PollTimeoutError`` / ``JobStatusError``."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                status = self.transport.get_json(status_url)
            except TransportError as exc:
                logger.warning("status poll %s/%s failed: %s", attempt, self.max_attempts, exc)
                self.sleep(self.error_interval)
                continue

            if not status.get("success", True) or status.get("exists") is False:
                raise JobStatusError(status.get("error") or status.get("message") or "job status unavailable")

            state = status.get("state")
            if on_progress is not None and "progress" in status:
                on_progress(status["progress"])
            if state == "completed":
                return status.get("result")
            if state == "failed":
                raise JobFailedError(
                    status.get("error") or status.get("failedReason") or "job failed",
                    status.get("attemptsMade"),
                    status.get("jobId"),
                )
            self.sleep(self.interval)

        # the job itself is not cancelled; only this caller stops waiting
        raise PollTimeoutError(f"job did not finish within {self.max_attempts} polls")


def submit_and_wait(
    submission: Dict[str, Any],
    poller: Optional[JobStatusPoller] = None,
    on_progress: Optional[Callable[[int], Any]] = None,
) -> Any:
    """Resolve a submission response: synchronous answers come back as-is, async ones are polled."""
    if not submission.get("async"):
        return submission
    if not submission.get("success", True):
        raise JobStatusError(submission.get("error") or submission.get("message") or "submission failed")
    poller = poller or JobStatusPoller(UrllibTransport())
    return poller.wait(submission["statusUrl"], on_progress)
