"""Poll scheduling module.

This module handles:
- Running one fetch-and-publish cycle per scheduled tick
- Bounded exponential backoff with jitter within a cycle
- Forcing re-authentication when the API rejects the token
- Flagging samples stale when cycles keep failing

Per-cycle state machine:
    IDLE -> FETCHING -> (SUCCESS | RETRYING -> FETCHING | FAILED) -> IDLE
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from apscheduler.job import Job
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from padm_exporter.auth import AuthError, TokenManager
from padm_exporter.client import AuthRejectedError, TransportError, VariableFetcher
from padm_exporter.exporter import PADMExporter
from padm_exporter.store import MetricStore
from padm_exporter.variables import ParseError, PollCycleResult, VariableDefinition

# Configure module logger
logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """Retry budget and backoff schedule for a single poll cycle.

    Attributes:
        retry_cap: Retries allowed after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the exponential delay, in seconds
        jitter: Extra random delay as a fraction of the delay (0.1 = up to 10%)
    """
    retry_cap: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.1
    rand: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self.rand(0, delay * self.jitter)


class Poller:
    """Drives the fetch-and-publish loop on a fixed interval.

    Attributes:
        interval: Seconds between cycle starts
        stale_after: Seconds without an update before a sample is stale
        state: State of the current (or last) cycle
        consecutive_failures: Failed cycles since the last success
    """

    JOB_ID = "padm_poll"

    def __init__(
        self,
        token_manager: TokenManager,
        fetcher: VariableFetcher,
        store: MetricStore,
        definitions: Sequence[VariableDefinition],
        interval: float = 30.0,
        stale_after: float = 90.0,
        retry_policy: Optional[RetryPolicy] = None,
        exporter: Optional[PADMExporter] = None,
        clock: Callable[[], float] = time.time,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """Initialize the poller.

        Args:
            token_manager: Source of access tokens
            fetcher: Variable fetcher
            store: Metric store to publish into
            definitions: Configured variable definitions
            interval: Poll period in seconds
            stale_after: Staleness threshold in seconds
            retry_policy: Retry budget per cycle
            exporter: Exporter whose operational metrics are updated per cycle
            clock: Time source, injectable for tests
            wait: Backoff sleep; returns True if interrupted by stop()
        """
        self.token_manager = token_manager
        self.fetcher = fetcher
        self.store = store
        self.definitions = list(definitions)
        self.interval = interval
        self.stale_after = stale_after
        self.retry_policy = retry_policy or RetryPolicy()
        self.exporter = exporter
        self._clock = clock
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait

        self.state = CycleState.IDLE
        self.consecutive_failures = 0

    def run_cycle(self) -> CycleState:
        """Run one poll cycle. Never raises.

        Returns:
            SUCCESS or FAILED
        """
        start_time = self._clock()
        self.state = CycleState.FETCHING

        try:
            result = self._fetch_with_retry()
        except Exception as e:
            logger.exception(f"Poll cycle failed (unexpected error): {e}")
            result = None

        now = self._clock()
        if result is not None:
            updated = self.store.merge(result)
            self.consecutive_failures = 0
            outcome = CycleState.SUCCESS
            logger.info(f"Poll cycle succeeded: {updated}/{len(self.definitions)} variables updated")
        else:
            self.consecutive_failures += 1
            outcome = CycleState.FAILED
            logger.error(f"Poll cycle failed ({self.consecutive_failures} consecutive)")

        self.store.expire(now, self.stale_after)

        if self.exporter:
            self.exporter.set_poll_result(
                outcome is CycleState.SUCCESS,
                now - start_time,
                self.consecutive_failures,
            )

        self.state = CycleState.IDLE
        return outcome

    def _fetch_with_retry(self) -> Optional[PollCycleResult]:
        """Fetch within this cycle's retry budget.

        Returns:
            The fetched result, or None once the budget is exhausted
        """
        auth_retried = False
        attempt = 0

        while not self._stop.is_set():
            try:
                token = self.token_manager.get_valid_token()
                return self.fetcher.fetch(token, self.definitions)

            except AuthRejectedError as e:
                if auth_retried:
                    logger.error(f"Token rejected again after re-authentication: {e}")
                    return None
                logger.warning(f"{e}, re-authenticating")
                self.token_manager.invalidate()
                auth_retried = True
                self.state = CycleState.RETRYING

            except (AuthError, TransportError, ParseError) as e:
                attempt += 1
                if attempt > self.retry_policy.retry_cap:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                    return None

                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.retry_policy.retry_cap + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.state = CycleState.RETRYING
                if self._wait(delay):
                    logger.info("Stop requested, abandoning retries")
                    return None

            self.state = CycleState.FETCHING

        return None

    def schedule(self, scheduler: BaseScheduler) -> Job:
        """Add the poll job to a scheduler, first run immediately.

        Cycles never overlap: a tick that fires while a cycle is still
        running is coalesced into the next one.
        """
        logger.info(f"Scheduling poll every {self.interval}s")
        return scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.JOB_ID,
            name="PADM variable poll",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )

    def stop(self) -> None:
        """Interrupt pending backoff waits so shutdown is not delayed."""
        self._stop.set()
