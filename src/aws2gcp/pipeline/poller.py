"""Bounded polling of asynchronous provider jobs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from aws2gcp.errors import TransientRemoteError
from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)


class PollOutcome(str, Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    REMOTE_FAILURE = "remote_failure"
    ABORTED = "aborted"


@dataclass
class PollHandle:
    """Reference to an in-flight provider job.

    ``fetch`` returns the job's current status in whatever shape the
    provider uses; the ``is_done``/``is_failed`` predicates passed to
    ``Poller.wait_until`` interpret it.
    """
    handle_id: str
    fetch: Callable[[], Any]
    description: str = ""

    def __str__(self) -> str:
        return self.description or self.handle_id


@dataclass
class PollResult:
    outcome: PollOutcome
    status: Any = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == PollOutcome.SUCCESS


class Poller:
    """Turns an async provider job into a blocking, cancellable wait.

    Sleeps happen on ``cancel_event.wait(interval)``, so setting the event
    (operator abort, SIGTERM) wakes the poller immediately and it returns
    ``ABORTED`` instead of polling again.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event or threading.Event()

    def wait_until(
        self,
        handle: PollHandle,
        is_done: Callable[[Any], bool],
        is_failed: Callable[[Any], bool],
        interval: float,
        max_attempts: int,
    ) -> PollResult:
        """Poll ``handle`` until it is done, failed, or the budget runs out.

        Each attempt fetches the status once. A failed status returns
        immediately; a done status returns success. After ``max_attempts``
        unresolved polls the result is ``TIMED_OUT`` and no further poll is
        made. Transient errors while fetching count as unresolved attempts.
        """
        status: Any = None
        for attempt in range(1, max_attempts + 1):
            if self.cancel_event.is_set():
                return PollResult(PollOutcome.ABORTED, status, attempt - 1)

            try:
                status = handle.fetch()
            except TransientRemoteError as e:
                logger.warning(f"Polling {handle} failed transiently: {e}")
            else:
                if is_failed(status):
                    logger.error(f"{handle} failed (status: {status})")
                    return PollResult(PollOutcome.REMOTE_FAILURE, status, attempt)
                if is_done(status):
                    logger.info(f"{handle} done after {attempt} poll(s)")
                    return PollResult(PollOutcome.SUCCESS, status, attempt)

            if attempt == max_attempts:
                break

            logger.info(f"Waiting for {handle}: status {status} (attempt {attempt}/{max_attempts})")
            if self.cancel_event.wait(interval):
                return PollResult(PollOutcome.ABORTED, status, attempt)

        logger.error(f"{handle} unresolved after {max_attempts} poll(s)")
        return PollResult(PollOutcome.TIMED_OUT, status, max_attempts)
