"""Tests for BudgetGate (per-owner monthly spend control)."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from knowledge_engine.budget.gate import BudgetGate
from knowledge_engine.budget.models import BudgetState, month_bounds, month_key
from knowledge_engine.config import settings


class TestBudgetModels:
    def test_month_key(self):
        assert month_key(datetime(2026, 12, 31, 23, 59, tzinfo=UTC)) == "2026-12"

    def test_month_bounds_rolls_year(self):
        start, following = month_bounds(datetime(2026, 12, 15, tzinfo=UTC))
        assert start == datetime(2026, 12, 1, tzinfo=UTC)
        assert following == datetime(2027, 1, 1, tzinfo=UTC)

    def test_status_thresholds(self):
        def state(spend):
            return BudgetState(
                owner_id="u", month="2026-10", monthly_budget_usd=10.0, current_spend_usd=spend
            )

        assert state(7.99).status == "under_budget"
        assert state(8.0).status == "near_limit"
        assert state(10.0).status == "over_budget"
        assert state(4.0).percentage_used == 40.0
        assert state(12.0).remaining_usd == 0.0

    def test_projected_monthly_from_daily_average(self):
        state = BudgetState(
            owner_id="u",
            month="2026-10",
            monthly_budget_usd=100.0,
            current_spend_usd=15.0,
            days_into_month=15,
            days_in_month=31,
        )
        assert state.projected_monthly_usd == 31.0

    def test_zero_window_limit_is_not_enforced(self):
        state = BudgetState(
            owner_id="u",
            month="2026-10",
            monthly_budget_usd=100.0,
            current_spend_usd=5.0,
            hourly_spend_usd=5.0,
            hourly_budget_usd=0.0,
        )
        assert state.denial_reason(1.0) is None


# -- authorize ---------------------------------------------------------------


async def test_new_owner_is_under_budget(gate) -> None:
    state = await gate.get_state("u1")
    assert state.current_spend_usd == 0.0
    assert state.monthly_budget_usd == 10.0
    assert state.status == "under_budget"
    assert await gate.authorize("u1", 0.01) is True


async def test_denies_at_budget(gate) -> None:
    await gate.record_spend("u1", 10.0)
    assert await gate.authorize("u1") is False


async def test_denies_over_budget_regardless_of_estimate(gate) -> None:
    await gate.record_spend("u1", 12.0)
    assert await gate.authorize("u1", 0.0) is False


async def test_denies_when_estimate_would_overshoot(gate) -> None:
    await gate.record_spend("u1", 9.5)
    assert await gate.authorize("u1", 0.4) is True
    assert await gate.authorize("u1", 1.0) is False


async def test_owners_are_independent(gate) -> None:
    await gate.record_spend("u1", 10.0)
    assert await gate.authorize("u2") is True


async def test_negative_spend_recorded_as_zero(gate) -> None:
    await gate.record_spend("u1", -5.0)
    assert (await gate.get_state("u1")).current_spend_usd == 0.0


# -- Budget overrides --------------------------------------------------------


async def test_set_budget_overrides_default(gate) -> None:
    await gate.set_budget("u1", 2.0)
    await gate.record_spend("u1", 2.0)

    state = await gate.get_state("u1")
    assert state.monthly_budget_usd == 2.0
    assert state.status == "over_budget"


async def test_set_budget_rejects_negative(gate) -> None:
    with pytest.raises(ValueError):
        await gate.set_budget("u1", -1.0)


async def test_zero_budget_denies_everything(gate) -> None:
    await gate.set_budget("u1", 0.0)
    assert await gate.authorize("u1", 0.0) is False


# -- Alerts ------------------------------------------------------------------


async def test_near_limit_alert_fires_once(gate) -> None:
    fired = await gate.record_spend("u1", 8.5)
    assert [a.threshold for a in fired] == [0.8]
    assert fired[0].kind == "warning"

    assert await gate.check_thresholds("u1") == []
    assert await gate.record_spend("u1", 0.1) == []
    assert (await gate.get_state("u1")).alert_thresholds_crossed == [0.8]


async def test_exceeded_alert_after_warning(gate) -> None:
    await gate.record_spend("u1", 8.0)
    fired = await gate.record_spend("u1", 2.0)

    assert [a.threshold for a in fired] == [1.0]
    assert fired[0].kind == "exceeded"


async def test_jump_past_budget_fires_both(gate) -> None:
    fired = await gate.record_spend("u1", 15.0)
    assert [a.threshold for a in fired] == [0.8, 1.0]


async def test_alert_handler_awaited(tmp_path, clock) -> None:
    handler = AsyncMock()
    gate = BudgetGate(tmp_path / "l.db", default_budget_usd=1.0, clock=clock, alert_handler=handler)

    await gate.record_spend("u1", 0.9)

    handler.assert_awaited_once()
    alert = handler.call_args.args[0]
    assert alert.owner_id == "u1"
    assert alert.month == "2026-10"


async def test_alert_handler_failure_is_swallowed(tmp_path, clock) -> None:
    handler = AsyncMock(side_effect=RuntimeError("pager down"))
    gate = BudgetGate(tmp_path / "l.db", default_budget_usd=1.0, clock=clock, alert_handler=handler)

    fired = await gate.record_spend("u1", 1.0)
    assert len(fired) == 2


# -- Month rollover ----------------------------------------------------------


async def test_new_month_resets_spend_and_alerts(gate, clock) -> None:
    await gate.record_spend("u1", 10.0)
    assert await gate.authorize("u1") is False

    clock.now = datetime(2026, 11, 1, 0, 0, 1, tzinfo=UTC)

    state = await gate.get_state("u1")
    assert state.month == "2026-11"
    assert state.current_spend_usd == 0.0
    assert state.alert_thresholds_crossed == []
    assert await gate.authorize("u1") is True

    fired = await gate.record_spend("u1", 9.0)
    assert [a.threshold for a in fired] == [0.8]


# -- Hourly / daily windows --------------------------------------------------


@pytest.fixture
def windowed(tmp_path, clock) -> BudgetGate:
    return BudgetGate(
        tmp_path / "windows.db",
        default_budget_usd=100.0,
        hourly_budget_usd=1.0,
        daily_budget_usd=2.0,
        daily_total_budget_usd=3.0,
        clock=clock,
    )


async def test_state_reports_window_spend(windowed, clock) -> None:
    clock.now = datetime(2026, 10, 15, 9, 30, tzinfo=UTC)
    await windowed.record_spend("u1", 0.25)
    clock.now = datetime(2026, 10, 15, 12, 10, tzinfo=UTC)
    await windowed.record_spend("u1", 0.5)
    await windowed.record_spend("u2", 0.75)

    state = await windowed.get_state("u1")
    assert state.hourly_spend_usd == 0.5
    assert state.daily_spend_usd == 0.75
    assert state.daily_total_spend_usd == 1.5
    assert state.hourly_budget_usd == 1.0
    assert state.days_into_month == 15
    assert state.days_in_month == 31
    assert state.projected_monthly_usd == pytest.approx(0.75 / 15 * 31, abs=1e-4)


async def test_hourly_limit_denies_until_next_hour(windowed, clock) -> None:
    await windowed.record_spend("u1", 1.0)
    assert await windowed.authorize("u1") is False

    clock.now = datetime(2026, 10, 15, 13, 0, tzinfo=UTC)
    assert await windowed.authorize("u1") is True


async def test_hourly_limit_checks_estimate(windowed) -> None:
    await windowed.record_spend("u1", 0.8)
    assert await windowed.authorize("u1", 0.1) is True
    assert await windowed.authorize("u1", 0.3) is False


async def test_daily_limit_denies_until_next_day(windowed, clock) -> None:
    for hour in (8, 9, 10, 11):
        clock.now = datetime(2026, 10, 15, hour, 0, tzinfo=UTC)
        await windowed.record_spend("u1", 0.5)

    clock.now = datetime(2026, 10, 15, 20, 0, tzinfo=UTC)
    assert await windowed.authorize("u1") is False

    clock.now = datetime(2026, 10, 16, 0, 0, 1, tzinfo=UTC)
    assert await windowed.authorize("u1") is True


async def test_daily_total_limit_spans_owners(windowed, clock) -> None:
    for hour, owner in ((8, "u1"), (9, "u2"), (10, "u3")):
        clock.now = datetime(2026, 10, 15, hour, 0, tzinfo=UTC)
        await windowed.record_spend(owner, 1.0)

    clock.now = datetime(2026, 10, 15, 20, 0, tzinfo=UTC)
    assert await windowed.authorize("u4") is False


async def test_windows_do_not_fire_monthly_alerts(windowed) -> None:
    assert await windowed.record_spend("u1", 1.0) == []


# -- Hard stop ---------------------------------------------------------------


async def test_hard_stop_off_allows_over_budget(tmp_path, clock, caplog) -> None:
    gate = BudgetGate(tmp_path / "soft.db", default_budget_usd=1.0, hard_stop=False, clock=clock)
    await gate.record_spend("u1", 2.0)

    with caplog.at_level("WARNING", logger="knowledge_engine.budget.gate"):
        assert await gate.authorize("u1", 0.5) is True
    assert "hard stop off" in caplog.text
    assert (await gate.get_state("u1")).status == "over_budget"


async def test_hard_stop_defaults_from_settings(tmp_path, clock, monkeypatch) -> None:
    monkeypatch.setattr(settings, "hard_stop_at_budget", False)
    gate = BudgetGate(tmp_path / "soft.db", default_budget_usd=0.0, clock=clock)
    assert await gate.authorize("u1") is True


# -- Zero budget / concurrency -----------------------------------------------


async def test_zero_budget_fires_no_alerts(gate) -> None:
    await gate.set_budget("u1", 0.0)

    assert await gate.check_thresholds("u1") == []
    assert await gate.record_spend("u1", 0.0) == []
    assert (await gate.get_state("u1")).alert_thresholds_crossed == []


async def test_concurrent_authorize_all_denied_at_budget(gate) -> None:
    await gate.record_spend("u1", 10.0)

    decisions = await asyncio.gather(*(gate.authorize("u1", 0.01) for _ in range(8)))
    assert decisions == [False] * 8


async def test_concurrent_authorize_after_concurrent_spend(gate) -> None:
    await gate.get_state("u1")  # create the ledger tables up front
    await asyncio.gather(*(gate.record_spend("u1", 2.5) for _ in range(4)))

    assert (await gate.get_state("u1")).current_spend_usd == pytest.approx(10.0)
    decisions = await asyncio.gather(*(gate.authorize("u1") for _ in range(8)))
    assert not any(decisions)
