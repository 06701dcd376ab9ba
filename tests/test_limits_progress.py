import asyncio

from core.search import CallQuota, CircuitBreaker, CostBudget, SortProgress
from core.search.progress import CANCELLED, COMPLETED, RUNNING


def test_call_quota_counts_down():
    quota = CallQuota(2)
    assert quota.try_acquire()
    assert quota.try_acquire()
    assert not quota.try_acquire()
    assert quota.remaining == 0
    assert CallQuota(-3).limit == 0


def test_cost_budget_never_overspends():
    budget = CostBudget(0.25)
    assert budget.try_spend(0.1)
    assert budget.try_spend(0.1)
    assert not budget.try_spend(0.1)
    assert budget.spent == 0.2

    budget.refund(0.5)
    assert budget.spent == 0.0


def test_breaker_opens_then_allows_a_trial_after_reset(clock):
    breaker = CircuitBreaker("vision", failure_threshold=2, reset_seconds=30, clock=clock)
    breaker.record_failure()
    assert breaker.allow()

    breaker.record_failure()
    assert breaker.state == CircuitBreaker.OPEN
    assert not breaker.allow()

    clock.advance(30)
    assert breaker.state == CircuitBreaker.HALF_OPEN
    breaker.record_failure()
    assert breaker.state == CircuitBreaker.OPEN

    clock.advance(30)
    breaker.record_success()
    assert breaker.state == CircuitBreaker.CLOSED
    assert breaker.failures == 0


def test_half_open_breaker_admits_a_single_trial(clock):
    breaker = CircuitBreaker("vision", failure_threshold=1, reset_seconds=30, clock=clock)
    breaker.record_failure()
    clock.advance(30)

    assert breaker.available()
    assert breaker.allow()
    assert not breaker.available()
    assert not breaker.allow()

    breaker.record_success()
    assert breaker.allow()
    assert breaker.allow()


def test_unreported_trial_expires_after_reset_period(clock):
    breaker = CircuitBreaker("vision", failure_threshold=1, reset_seconds=30, clock=clock)
    breaker.record_failure()
    clock.advance(30)
    assert breaker.allow()

    clock.advance(30)
    assert breaker.allow()


def test_progress_percent_is_monotonic_and_completes_at_100():
    progress = SortProgress()
    progress.update("classify", 20)
    progress.update("rank", 10, strategy="metadata")

    snapshot = progress.snapshot()
    assert snapshot.status == RUNNING
    assert snapshot.percent == 20
    assert snapshot.strategy == "metadata"

    progress.close(COMPLETED)
    progress.update("late", 50)
    assert progress.snapshot().percent == 100
    assert progress.closed


def test_stream_yields_updates_until_closed():
    async def scenario():
        progress = SortProgress()
        seen = []

        async def consume():
            async for snapshot in progress.stream():
                seen.append((snapshot.stage, snapshot.status))

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        progress.update("classify", 10)
        progress.update("rank", 60)
        progress.close(CANCELLED)
        await asyncio.wait_for(consumer, timeout=1)
        return seen

    seen = asyncio.run(scenario())
    assert seen[0] == ("queued", "pending")
    assert [stage for stage, _ in seen[1:3]] == ["classify", "rank"]
    assert seen[-1][1] == CANCELLED


def test_cancel_wakes_waiters():
    async def scenario():
        progress = SortProgress()
        waiter = asyncio.create_task(progress.wait_cancelled())
        await asyncio.sleep(0)
        progress.cancel()
        await asyncio.wait_for(waiter, timeout=1)
        return progress.cancelled

    assert asyncio.run(scenario()) is True
