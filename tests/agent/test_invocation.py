"""Tests for the Invoker retry, deadline, concurrency and accounting behaviour."""

from __future__ import annotations

import asyncio

import pytest

from modelmesh.agent.invocation import THINKING_PREFIX, Deadline, Invoker
from modelmesh.agent.model_router.budget import RequestBudget
from modelmesh.config import Settings
from modelmesh.errors import (
    ContentPolicyError,
    ModelNotFoundError,
    PermanentProviderError,
    ProviderErrorKind,
    RateLimitError,
    TransientProviderError,
)
from modelmesh.orchestration.types import AttemptState, Role


# ------------------------------------------------------------------ #
# Success path
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_successful_invocation_charges_ledger_and_settles(invoker, provider, context):
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.01, "alpha")

    result = await invoker.invoke("alpha", "hello world", reservation=reservation)

    assert result.success
    assert result.text == "alpha answer"
    assert result.attempts == 1
    assert result.state == AttemptState.SUCCEEDED
    # 2 input tokens at 0.001/1k + 50 output tokens at 0.002/1k
    assert result.cost == pytest.approx(0.000102)
    assert context.ledger.total_cost == pytest.approx(0.000102)
    assert budget.spent == pytest.approx(0.000102)
    assert budget.reserved == 0
    assert context.monitor.record_count("alpha") == 1


@pytest.mark.asyncio
async def test_temperature_and_output_cap_are_passed(invoker, provider, settings):
    await invoker.invoke("alpha", "hi", temperature=0.2)

    assert provider.params[0].temperature == 0.2
    assert provider.params[0].max_tokens == settings.max_output_tokens


@pytest.mark.asyncio
async def test_deep_reasoning_prefixes_prompt(invoker, provider):
    await invoker.invoke("alpha", "prove it", deep_reasoning=True)

    assert provider.calls == [("alpha", THINKING_PREFIX + "prove it")]


@pytest.mark.asyncio
async def test_role_and_tool_are_recorded(invoker, context):
    result = await invoker.invoke("alpha", "hi", tool="orchestrate", role=Role.VOTE)

    assert result.role == Role.VOTE
    assert context.monitor.get_tool_metrics()["orchestrate"].count == 1


@pytest.mark.asyncio
async def test_unknown_model_raises_before_calling(invoker, provider):
    with pytest.raises(ModelNotFoundError):
        await invoker.invoke("missing", "hi")

    assert provider.calls == []


# ------------------------------------------------------------------ #
# Retries
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_transient_errors_are_retried(invoker, provider, context, no_sleep):
    provider.script(
        "alpha",
        errors=[TransientProviderError("503"), TransientProviderError("503")],
    )

    result = await invoker.invoke("alpha", "hi")

    assert result.success
    assert result.attempts == 3
    assert no_sleep.await_count == 2
    stats = context.monitor.get_stats("alpha")
    assert stats.sample_count == 3
    assert stats.success_count == 1


@pytest.mark.asyncio
async def test_retries_exhausted_releases_reservation(invoker, provider, context):
    provider.script("alpha", fail_with=TransientProviderError("down"))
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.5, "alpha")

    result = await invoker.invoke("alpha", "hi", reservation=reservation)

    assert not result.success
    assert result.state == AttemptState.FAILED
    assert result.error == ProviderErrorKind.TRANSIENT
    assert result.attempts == 3  # max_retries=2
    assert result.cost == 0
    assert budget.reserved == 0
    assert budget.spent == 0
    assert context.ledger.total_cost == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (ContentPolicyError("refused"), ProviderErrorKind.CONTENT_POLICY),
        (PermanentProviderError("bad key"), ProviderErrorKind.PERMANENT),
        (RuntimeError("unexpected"), ProviderErrorKind.PERMANENT),
    ],
)
async def test_non_retryable_errors_fail_after_one_attempt(invoker, provider, no_sleep, error, kind):
    provider.script("alpha", fail_with=error)

    result = await invoker.invoke("alpha", "hi")

    assert not result.success
    assert result.error == kind
    assert result.attempts == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after(invoker, provider, no_sleep):
    provider.script("alpha", errors=[RateLimitError("slow down", retry_after=1.5)])

    result = await invoker.invoke("alpha", "hi")

    assert result.success
    assert result.attempts == 2
    no_sleep.assert_awaited_once_with(1.5)


@pytest.mark.asyncio
async def test_rate_limit_beyond_deadline_is_not_retried(invoker, provider, no_sleep):
    provider.script("alpha", fail_with=RateLimitError("slow down", retry_after=30))

    result = await invoker.invoke("alpha", "hi", deadline=Deadline.after(1.0))

    assert not result.success
    assert result.error == ProviderErrorKind.RATE_LIMITED
    assert result.attempts == 1
    no_sleep.assert_not_awaited()


# ------------------------------------------------------------------ #
# Deadlines and concurrency
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_deadline_expiry_is_transient_failure(invoker, provider):
    provider.script("alpha", delay=1.0)

    result = await invoker.invoke("alpha", "hi", deadline=invoker.new_deadline(0.05))

    assert not result.success
    assert result.error == ProviderErrorKind.TRANSIENT


def test_deadline_remaining_never_negative():
    now = [100.0]
    deadline = Deadline.after(5.0, clock=lambda: now[0])

    now[0] = 103.0
    assert deadline.remaining() == pytest.approx(2.0)
    assert not deadline.expired

    now[0] = 110.0
    assert deadline.remaining() == 0.0
    assert deadline.expired


@pytest.mark.asyncio
async def test_concurrency_limit_caps_in_flight_calls(provider, context, optimizer, no_sleep):
    settings = Settings(environment="test", max_concurrent_invocations=2)
    invoker = Invoker(provider, context, optimizer, settings, sleep=no_sleep)
    provider.script("alpha", delay=0.02)

    results = await asyncio.gather(*(invoker.invoke("alpha", f"q{i}") for i in range(6)))

    assert all(r.success for r in results)
    assert provider.peak_in_flight == 2
    assert invoker.peak_in_flight == 2


def test_deadline_on_start_counts_from_first_start():
    now = [100.0]
    deadline = Deadline.on_start(5.0, clock=lambda: now[0])

    now[0] = 150.0
    assert not deadline.started
    assert deadline.remaining() == 5.0

    deadline.start()
    now[0] = 152.0
    deadline.start()
    assert deadline.started
    assert deadline.remaining() == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_waiting_for_a_slot_does_not_consume_the_timeout(provider, context, optimizer, no_sleep):
    """Test queued invocations keep their full allowance once they get a slot."""
    settings = Settings(environment="test", max_concurrent_invocations=1)
    invoker = Invoker(provider, context, optimizer, settings, sleep=no_sleep)
    provider.script("alpha", delay=0.05)

    results = await asyncio.gather(
        *(invoker.invoke("alpha", f"q{i}", deadline=invoker.new_deadline(0.12)) for i in range(4))
    )

    assert all(r.success for r in results)
    assert [r.attempts for r in results] == [1, 1, 1, 1]
    assert provider.peak_in_flight == 1


@pytest.mark.asyncio
async def test_cancelled_invocation_closes_its_monitor_record(invoker, provider, context):
    provider.script("alpha", delay=10.0)

    task = asyncio.create_task(invoker.invoke("alpha", "hi"))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stats = context.monitor.get_stats("alpha")
    assert stats.sample_count == 1
    assert stats.success_count == 0
    assert context.ledger.total_cost == 0
