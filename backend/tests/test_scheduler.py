"""Tests for the background refresh scheduler.

Covers the single-flight guard, rate-limit backoff, bounded retries and
the guarantee that failures never discard cached data.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from price_api.services.audit_log import AuditLogService
from price_api.services.cache_store import CacheState, CacheStore, PriceRecord
from price_api.services.fetcher import AllProvidersExhausted, FetchFailed
from price_api.services.margin import MarginedQuote
from price_api.services.providers.base import ProviderUnavailable, Quote, RateLimited
from price_api.services.scheduler import KickResult, RefreshScheduler, SchedulerState


def rate_limited(retry_after=None) -> AllProvidersExhausted:
    cause = RateLimited("binance returned 429 Too Many Requests", provider="binance", retry_after=retry_after)
    return AllProvidersExhausted(cause, rate_limited=True, provider="binance")


def provider_down() -> FetchFailed:
    return FetchFailed(ProviderUnavailable("coingecko returned 502", provider="coingecko"), provider="coingecko")


@pytest.fixture
def scheduler(engine):
    return engine.scheduler


@pytest.fixture
def make_scheduler(settings, session_maker, fetcher, clock, fake_sleep):
    """Build a standalone scheduler with overridden settings."""
    def _make(**overrides):
        state = CacheState()
        store = CacheStore(state, session_maker, 600, 7200, clock=clock)
        return RefreshScheduler(
            state,
            fetcher,
            store,
            AuditLogService(session_maker),
            replace(settings, **overrides),
            clock=clock,
            sleep=fake_sleep,
        )
    return _make


class TestTiming:
    """Test backoff and retry delay arithmetic."""

    @pytest.mark.asyncio
    async def test_backoff_doubles_up_to_ceiling(self, scheduler):
        delays = [scheduler.compute_backoff(n).total_seconds() for n in range(1, 7)]
        assert delays == [60, 120, 240, 480, 480, 480]

    @pytest.mark.asyncio
    async def test_backoff_is_monotonic(self, scheduler):
        delays = [scheduler.compute_backoff(n) for n in range(1, 20)]
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_retry_delay_doubles(self, scheduler):
        assert [scheduler.retry_delay(k) for k in range(3)] == [5.0, 10.0, 20.0]


class TestKick:
    """Test the single-flight guard and kick outcomes."""

    @pytest.mark.asyncio
    async def test_concurrent_kicks_start_one_fetch(self, scheduler, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        async def kick():
            return scheduler.kick(["tether"])

        results = await asyncio.gather(*[kick() for _ in range(25)])

        assert results.count(KickResult.STARTED) == 1
        assert results.count(KickResult.IN_PROGRESS) == 24
        assert scheduler.current_state == SchedulerState.FETCHING

        fetcher.gate.set()
        await scheduler.wait_until_settled()

        assert len(fetcher.calls) == 1
        assert scheduler.current_state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_kick_never_waits_for_the_fetch(self, scheduler, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        assert scheduler.kick() == KickResult.STARTED
        assert scheduler.state.prices == {}

        fetcher.gate.set()
        await scheduler.wait_until_settled()
        assert "tether" in scheduler.state.prices

    @pytest.mark.asyncio
    async def test_min_request_interval(self, make_scheduler, fetcher, clock):
        scheduler = make_scheduler(min_request_interval_seconds=1200)
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        assert scheduler.kick() == KickResult.STARTED
        await scheduler.wait_until_settled()

        clock.advance(600)
        assert scheduler.kick() == KickResult.TOO_SOON
        assert scheduler.next_attempt_in() == 600

        # Manual refresh skips the interval
        assert scheduler.trigger(force=True) == KickResult.STARTED
        await scheduler.wait_until_settled()
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_fetch(self, make_scheduler, fetcher):
        scheduler = make_scheduler(tracked_tokens=[])
        assert scheduler.kick() == KickResult.NOTHING_TO_FETCH
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_only_known_tokens_are_tracked(self, scheduler):
        added = scheduler.track(["solana", "not-a-token", "tether"])
        assert added == ["solana"]
        assert "not-a-token" not in scheduler.tracked_tokens

    @pytest.mark.asyncio
    async def test_refresh_waits_for_completion(self, scheduler, fetcher):
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        result = await scheduler.refresh()

        assert result == KickResult.STARTED
        assert scheduler.state.prices["tether"].ngn_price == 1520.0


class TestSuccess:
    """Test the success path."""

    @pytest.mark.asyncio
    async def test_margin_applied_once_before_upsert(self, scheduler, fetcher):
        fetcher.succeed({
            "bitcoin": Quote(usd=65000.0, ngn=98800000.0),
            "tether": Quote(usd=1.0),
        })
        upsert = AsyncMock(wraps=scheduler.cache_store.upsert)
        scheduler.cache_store.upsert = upsert

        await scheduler.refresh()

        upsert.assert_awaited_once()
        records = {r.token_id: r for r in upsert.call_args.args[0]}
        assert records["bitcoin"].ngn_price == 98800020.0
        assert records["bitcoin"].ngn_price_before_margin == 98800000.0
        assert records["bitcoin"].usd_price == 65000.0
        assert records["tether"].ngn_price is None

    @pytest.mark.asyncio
    async def test_success_resets_failure_bookkeeping(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited())
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        await scheduler.refresh()
        assert scheduler.state.consecutive_failures == 1

        clock.advance(61)
        await scheduler.refresh()

        state = scheduler.state
        assert state.consecutive_failures == 0
        assert state.rate_limited_until is None
        assert state.retry_count == 0
        assert state.last_error is None
        assert state.last_successful_fetch == clock()
        assert state.fetch_attempts == 2

    @pytest.mark.asyncio
    async def test_success_is_logged(self, scheduler, fetcher):
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)}, source="coincap")

        await scheduler.refresh(reason="timer")

        entries = await scheduler.audit_log.recent_fetches()
        assert entries[0]["status"] == "success"
        assert entries[0]["reason"] == "timer"
        assert entries[0]["source"] == "coincap"
        assert entries[0]["tokens"] == ["tether"]


class TestRateLimit:
    """Test backoff after rate-limited campaigns."""

    @pytest.mark.asyncio
    async def test_first_429_backs_off_base_then_doubles(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited())

        await scheduler.refresh()

        assert scheduler.current_state == SchedulerState.BACKOFF
        assert scheduler.state.rate_limited_until - clock() == timedelta(seconds=60)
        assert scheduler.kick() == KickResult.BACKED_OFF
        assert not scheduler.has_pending_retry

        clock.advance(61)
        await scheduler.refresh()

        assert scheduler.state.rate_limited_until - clock() == timedelta(seconds=120)
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_backoff_capped_at_ceiling(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited())

        windows = []
        for _ in range(6):
            await scheduler.refresh()
            window = scheduler.state.rate_limited_until - clock()
            windows.append(window.total_seconds())
            clock.advance(window.total_seconds() + 1)

        assert windows == [60, 120, 240, 480, 480, 480]

    @pytest.mark.asyncio
    async def test_manual_refresh_respects_backoff(self, scheduler, fetcher):
        fetcher.fail(rate_limited())
        await scheduler.refresh()

        assert scheduler.trigger(force=True) == KickResult.BACKED_OFF
        assert len(fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_after_hint_within_ceiling(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited(retry_after=200))
        await scheduler.refresh()
        assert scheduler.state.rate_limited_until - clock() == timedelta(seconds=200)

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_capped(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited(retry_after=86400))
        await scheduler.refresh()
        assert scheduler.state.rate_limited_until - clock() == timedelta(seconds=480)

    @pytest.mark.asyncio
    async def test_next_attempt_reports_backoff(self, scheduler, fetcher, clock):
        fetcher.fail(rate_limited())
        await scheduler.refresh()
        clock.advance(15)
        assert scheduler.next_attempt_in() == 45

    @pytest.mark.asyncio
    async def test_earlier_errors_do_not_inflate_first_backoff(self, make_scheduler, fetcher, clock):
        scheduler = make_scheduler(max_retries=0)
        fetcher.fail(provider_down())
        fetcher.fail(provider_down())
        fetcher.fail(rate_limited())

        for _ in range(3):
            await scheduler.refresh()

        assert len(fetcher.calls) == 3
        assert scheduler.state.consecutive_failures == 1
        assert scheduler.state.rate_limited_until - clock() == timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_next_attempt_positive_while_fetching(self, scheduler, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        assert scheduler.kick() == KickResult.STARTED
        assert scheduler.next_attempt_in() > 0

        fetcher.gate.set()
        await scheduler.wait_until_settled()
        assert scheduler.next_attempt_in() == 0


class TestRetries:
    """Test bounded, delayed retries after non-rate-limit failures."""

    @pytest.mark.asyncio
    async def test_retries_are_bounded_and_delayed(self, scheduler, fetcher, fake_sleep):
        fetcher.fail(provider_down())

        scheduler.kick()
        await scheduler.wait_until_settled()

        # one campaign plus max_retries retries
        assert len(fetcher.calls) == 3
        assert fake_sleep.delays == [5.0, 10.0]
        # Plain errors do not count toward the rate-limit backoff
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.current_state == SchedulerState.IDLE
        assert not scheduler.has_pending_retry

        entries = await scheduler.audit_log.recent_fetches()
        assert [e["reason"] for e in entries] == ["retry", "retry", "kick"]
        assert all(e["status"] == "error" for e in entries)

    @pytest.mark.asyncio
    async def test_retry_recovers(self, scheduler, fetcher):
        fetcher.fail(provider_down())
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        scheduler.kick()
        await scheduler.wait_until_settled()

        assert len(fetcher.calls) == 2
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.state.prices["tether"].ngn_price == 1520.0

    @pytest.mark.asyncio
    async def test_retry_bypasses_min_interval(self, make_scheduler, fetcher):
        scheduler = make_scheduler(min_request_interval_seconds=1200, max_retries=1)
        fetcher.fail(provider_down())

        scheduler.kick()
        await scheduler.wait_until_settled()

        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_retry_stops_when_rate_limited(self, scheduler, fetcher):
        fetcher.fail(provider_down())
        fetcher.fail(rate_limited())

        scheduler.kick()
        await scheduler.wait_until_settled()

        assert len(fetcher.calls) == 2
        assert scheduler.current_state == SchedulerState.BACKOFF
        assert not scheduler.has_pending_retry

    @pytest.mark.asyncio
    async def test_unexpected_error_is_a_failure(self, scheduler, fetcher):
        fetcher.fail(RuntimeError("boom"))
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        scheduler.kick()
        await scheduler.wait_until_settled()

        assert scheduler.state.is_fetching is False
        assert "tether" in scheduler.state.prices

    @pytest.mark.asyncio
    async def test_storage_error_is_a_failure(self, make_scheduler, fetcher):
        scheduler = make_scheduler(max_retries=0)
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})
        scheduler.cache_store.upsert = AsyncMock(side_effect=RuntimeError("disk full"))

        await scheduler.refresh()

        assert scheduler.state.is_fetching is False
        assert scheduler.state.last_successful_fetch is None
        assert "disk full" in scheduler.state.last_error
        entries = await scheduler.audit_log.recent_fetches()
        assert entries[0]["status"] == "error"
        assert "disk full" in entries[0]["error"]


class TestNoDataLoss:
    """Failures must never discard previously cached data."""

    @pytest.mark.asyncio
    async def test_failure_keeps_cached_prices(self, scheduler, fetcher, clock):
        good = PriceRecord.from_quote(
            "bitcoin",
            MarginedQuote(usd=65000.0, ngn=98800020.0, ngn_before_margin=98800000.0),
            "coingecko",
            clock(),
        )
        await scheduler.cache_store.upsert([good])
        fetcher.fail(rate_limited())

        await scheduler.refresh()

        assert scheduler.state.prices == {"bitcoin": good}
        durable = await scheduler.cache_store.read_durable()
        assert durable["bitcoin"].ngn_price == 98800020.0

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_cached_prices(self, scheduler, fetcher, clock):
        good = PriceRecord.from_quote(
            "tether",
            MarginedQuote(usd=1.0, ngn=1520.0, ngn_before_margin=1500.0),
            "coingecko",
            clock(),
        )
        await scheduler.cache_store.upsert([good])
        fetcher.fail(provider_down())

        scheduler.kick()
        await scheduler.wait_until_settled()

        assert scheduler.state.prices["tether"] == good


class TestLifecycle:
    """Test the periodic timer."""

    @pytest.mark.asyncio
    async def test_start_fetches_and_stop_halts(self, settings, session_maker, fetcher, clock):
        state = CacheState()
        scheduler = RefreshScheduler(
            state,
            fetcher,
            CacheStore(state, session_maker, 600, 7200, clock=clock),
            AuditLogService(session_maker),
            settings,
            clock=clock,
        )
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(5):
            await asyncio.sleep(0)
        await scheduler.wait_until_settled()

        assert len(fetcher.calls) == 1
        assert "tether" in state.prices

        await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_fetch_finish(self, scheduler, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})
        scheduler.kick()

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0)
        assert not stopping.done()

        fetcher.gate.set()
        await stopping

        assert "tether" in scheduler.state.prices
        assert scheduler.state.is_fetching is False

    @pytest.mark.asyncio
    async def test_status(self, scheduler, fetcher):
        fetcher.fail(rate_limited())
        await scheduler.refresh()

        status = scheduler.status()

        assert status["state"] == "backoff"
        assert status["consecutive_failures"] == 1
        assert status["next_attempt_in_seconds"] == 60
        assert status["tracked_tokens"] == ["tether", "ethereum", "bitcoin"]
        assert "429" in status["last_error"]
