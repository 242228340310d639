"""Background refresh scheduler.

States:
- idle: no fetch in flight, no active backoff
- fetching: exactly one fetch campaign in flight (``CacheState.is_fetching``)
- backoff: the last campaign was rate limited and ``rate_limited_until`` is ahead

A campaign starts from the timer, a kick (read path, manual trigger) or a
scheduled retry. Only the scheduler talks to upstream providers and only the
scheduler retries. Retries are always delayed and bounded per failure episode.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .audit_log import AuditLogService, FetchLogEntry
from .cache_store import CacheState, CacheStore, PriceRecord
from .config import PriceSettings
from .fetcher import FetchFailed, FetchResult, MultiSourceFetcher
from .margin import apply_margin
from .providers.base import RateLimited

logger = logging.getLogger(__name__)

# Reported wait while a fetch is in flight
IN_FLIGHT_ESTIMATE_SECONDS = 5


class SchedulerState(str, Enum):
    """Refresh scheduler state."""
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF = "backoff"


class KickResult(str, Enum):
    """Outcome of a refresh request."""
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    BACKED_OFF = "backed_off"
    TOO_SOON = "too_soon"
    NOTHING_TO_FETCH = "nothing_to_fetch"


class RefreshScheduler:
    """Owns every upstream fetch and every write of fresh data into the cache."""

    def __init__(
        self,
        state: CacheState,
        fetcher: MultiSourceFetcher,
        cache_store: CacheStore,
        audit_log: AuditLogService,
        settings: PriceSettings,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.state = state
        self.fetcher = fetcher
        self.cache_store = cache_store
        self.audit_log = audit_log
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

        self.tracked_tokens: List[str] = list(dict.fromkeys(settings.tracked_tokens))

        self._campaign_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def current_state(self) -> SchedulerState:
        if self.state.is_fetching:
            return SchedulerState.FETCHING
        if self._backoff_remaining(self._clock()) > 0:
            return SchedulerState.BACKOFF
        return SchedulerState.IDLE

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending_retry(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def track(self, token_ids: Iterable[str]) -> List[str]:
        """Add priceable tokens to the refresh set.

        Returns:
            Tokens that were newly tracked
        """
        added = []
        for token_id in token_ids:
            if token_id in self.tracked_tokens or token_id in added:
                continue
            if self.fetcher.is_known(token_id):
                added.append(token_id)
        if added:
            self.tracked_tokens.extend(added)
            logger.info(f"Now tracking {', '.join(added)}")
        return added

    # Timing
    def compute_backoff(self, consecutive_failures: int) -> timedelta:
        """Backoff after the n-th consecutive rate-limited campaign: base * 2^(n-1), capped."""
        exponent = max(consecutive_failures, 1) - 1
        seconds = min(
            self.settings.base_backoff_seconds * (2 ** exponent),
            self.settings.backoff_ceiling_seconds,
        )
        return timedelta(seconds=seconds)

    def retry_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (zero-based)."""
        return self.settings.initial_retry_delay_seconds * (2 ** retry_count)

    def _backoff_remaining(self, now: datetime) -> float:
        until = self.state.rate_limited_until
        if until is None:
            return 0.0
        return max((until - now).total_seconds(), 0.0)

    def _interval_remaining(self, now: datetime) -> float:
        last = self.state.last_request_time
        if last is None:
            return 0.0
        elapsed = (now - last).total_seconds()
        return max(self.settings.min_request_interval_seconds - elapsed, 0.0)

    def next_attempt_in(self) -> int:
        """Seconds until the next upstream attempt may be issued."""
        now = self._clock()
        wait = self._interval_remaining(now)
        if self.state.next_retry_at is not None:
            wait = min(wait, max((self.state.next_retry_at - now).total_seconds(), 0.0))
        wait = max(wait, self._backoff_remaining(now))
        if self.state.is_fetching:
            wait = max(wait, IN_FLIGHT_ESTIMATE_SECONDS)
        return int(wait)

    # Triggers
    def kick(self, token_ids: Optional[Iterable[str]] = None, reason: str = "kick") -> KickResult:
        """Request a refresh without waiting for it.

        A kick while a fetch is in flight, during backoff, or sooner than the
        minimum request interval is a no-op.
        """
        if token_ids:
            self.track(token_ids)
        return self._begin(reason, respect_interval=True)

    async def refresh(self, reason: str = "manual", force: bool = False) -> KickResult:
        """Start a campaign and wait for it to finish.

        Args:
            reason: Tag recorded in the fetch log
            force: Skip the minimum request interval (never the backoff window)
        """
        result = self._begin(reason, respect_interval=not force)
        if result == KickResult.STARTED and self._campaign_task is not None:
            await self._campaign_task
        return result

    def trigger(self, reason: str = "manual", force: bool = False) -> KickResult:
        """Non-blocking counterpart of :meth:`refresh`."""
        return self._begin(reason, respect_interval=not force)

    def _begin(self, reason: str, respect_interval: bool) -> KickResult:
        now = self._clock()

        if self.state.is_fetching:
            return KickResult.IN_PROGRESS
        if self._backoff_remaining(now) > 0:
            return KickResult.BACKED_OFF
        if respect_interval and self._interval_remaining(now) > 0:
            return KickResult.TOO_SOON
        if not self.tracked_tokens:
            return KickResult.NOTHING_TO_FETCH

        # Set before the task exists so concurrent kicks see the fetch in flight
        self.state.is_fetching = True
        if reason != "retry":
            # A fresh campaign opens a new retry budget
            self._cancel_retry()
            self.state.retry_count = 0

        self._campaign_task = asyncio.create_task(self._run_campaign(list(self.tracked_tokens), reason))
        return KickResult.STARTED

    # Campaign
    async def _run_campaign(self, tokens: List[str], reason: str) -> None:
        started = time.perf_counter()
        self.state.last_request_time = self._clock()
        self.state.fetch_attempts += 1
        logger.info(f"Fetch campaign #{self.state.fetch_attempts} ({reason}) for {len(tokens)} tokens")

        retry = False
        try:
            try:
                result = await self.fetcher.fetch(tokens)
            except FetchFailed as e:
                retry = await self._handle_failure(e, tokens, reason, self._elapsed_ms(started))
            except Exception as e:
                logger.error(f"Unexpected error in fetch campaign: {e}", exc_info=True)
                retry = await self._handle_failure(
                    FetchFailed(e), tokens, reason, self._elapsed_ms(started)
                )
            else:
                try:
                    await self._handle_success(result, reason, self._elapsed_ms(started))
                except Exception as e:
                    logger.error(f"Failed to store fetched prices: {e}", exc_info=True)
                    retry = await self._handle_failure(
                        FetchFailed(e), tokens, reason, self._elapsed_ms(started)
                    )
        finally:
            self.state.is_fetching = False

        if retry:
            self._schedule_retry()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    async def _handle_success(self, result: FetchResult, reason: str, duration_ms: int) -> None:
        now = self._clock()
        margined = apply_margin(result.quotes, self.settings.margin_ngn)
        records = [
            PriceRecord.from_quote(token_id, quote, result.source, now)
            for token_id, quote in margined.items()
        ]
        durable_ok = await self.cache_store.upsert(records)

        self.state.consecutive_failures = 0
        self.state.retry_count = 0
        self.state.next_retry_at = None
        self.state.rate_limited_until = None
        self.state.last_error = None
        self.state.last_successful_fetch = now

        logger.info(f"Cached {len(records)} prices from {result.source}")
        await self.audit_log.record_fetch(FetchLogEntry(
            status="success",
            reason=reason,
            tokens=sorted(result.quotes),
            source=result.source,
            duration_ms=duration_ms,
            error=None if durable_ok else "durable write failed",
            timestamp=now,
        ))

    async def _handle_failure(self, error: FetchFailed, tokens: List[str], reason: str, duration_ms: int) -> bool:
        """Record a failed campaign.

        Returns:
            True if a retry should be scheduled
        """
        now = self._clock()
        self.state.last_error = str(error)

        if error.rate_limited:
            # Only rate-limited campaigns count toward the backoff exponent
            self.state.consecutive_failures += 1
            backoff = self.compute_backoff(self.state.consecutive_failures)
            cause = error.cause
            if isinstance(cause, RateLimited) and cause.retry_after:
                # Honour a longer Retry-After, still within the ceiling
                hinted = min(cause.retry_after, self.settings.backoff_ceiling_seconds)
                backoff = max(backoff, timedelta(seconds=hinted))
            self.state.rate_limited_until = now + backoff
            self._cancel_retry()
            logger.warning(
                f"Rate limited ({self.state.consecutive_failures} in a row), "
                f"backing off {backoff.total_seconds():.0f}s"
            )
            await self.audit_log.record_fetch(FetchLogEntry(
                status="rate_limited",
                reason=reason,
                tokens=tokens,
                source=error.provider,
                duration_ms=duration_ms,
                error=str(error),
                timestamp=now,
            ))
            return False

        logger.error(f"Fetch campaign failed: {error}")
        await self.audit_log.record_fetch(FetchLogEntry(
            status="error",
            reason=reason,
            tokens=tokens,
            source=error.provider,
            duration_ms=duration_ms,
            error=str(error),
            timestamp=now,
        ))

        if self.state.retry_count < self.settings.max_retries:
            return True
        logger.warning(f"Retry budget of {self.settings.max_retries} exhausted, waiting for next tick")
        return False

    # Retries
    def _schedule_retry(self) -> None:
        delay = self.retry_delay(self.state.retry_count)
        self.state.retry_count += 1
        self.state.next_retry_at = self._clock() + timedelta(seconds=delay)
        logger.info(f"Retry {self.state.retry_count}/{self.settings.max_retries} in {delay:.0f}s")
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._retry_task = None
        self.state.next_retry_at = None
        result = self._begin("retry", respect_interval=False)
        if result != KickResult.STARTED:
            logger.info(f"Scheduled retry skipped: {result.value}")

    def _cancel_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None
        self.state.next_retry_at = None

    # Timer
    async def start(self) -> None:
        """Start the periodic refresh loop."""
        if self._running:
            return
        self._running = True
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Refresh scheduler started (every {self.settings.refresh_interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the loop, drop pending retries, let an in-flight fetch finish."""
        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            self._timer_task = None

        # A finishing campaign may schedule another retry; loop until none is left
        while True:
            self._cancel_retry()
            task = self._campaign_task
            if task is None or task.done():
                break
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=10.0)
            except asyncio.TimeoutError:
                task.cancel()
                break

        logger.info("Refresh scheduler stopped")

    async def _timer_loop(self) -> None:
        while self._running:
            try:
                result = self._begin("timer", respect_interval=True)
                if result != KickResult.STARTED:
                    logger.debug(f"Timer tick skipped: {result.value}")
            except Exception as e:
                logger.error(f"Error in refresh timer: {e}")
            await self._sleep(self.settings.refresh_interval_seconds)

    async def wait_until_settled(self) -> None:
        """Wait until no campaign or retry is pending."""
        while True:
            pending = [
                t for t in (self._campaign_task, self._retry_task)
                if t is not None and not t.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        """Read-only scheduler status for health reporting."""
        state = self.state
        return {
            "state": self.current_state.value,
            "running": self._running,
            "is_fetching": state.is_fetching,
            "fetch_attempts": state.fetch_attempts,
            "consecutive_failures": state.consecutive_failures,
            "retry_count": state.retry_count,
            "pending_retry": self.has_pending_retry,
            "next_retry_at": state.next_retry_at.isoformat() if state.next_retry_at else None,
            "rate_limited_until": state.rate_limited_until.isoformat() if state.rate_limited_until else None,
            "last_request_time": state.last_request_time.isoformat() if state.last_request_time else None,
            "last_error": state.last_error,
            "next_attempt_in_seconds": self.next_attempt_in(),
            "tracked_tokens": list(self.tracked_tokens),
            "providers": self.fetcher.provider_names,
        }
