"""BudgetGate — admission control for paid model calls.

Every paid call the engine makes follows the same sequence::

    if await gate.authorize(owner_id, estimate):
        result = await provider_call()
        await gate.record_spend(owner_id, result.cost_usd)

State is re-derived from the spend ledger on every call, so writes from
concurrent requests are always visible. The authorize → call → record
sequence is not atomic: two concurrent calls from one owner may both be
allowed and together overshoot the budget slightly. That soft limit is
accepted; alerts, on the other hand, are deduplicated by a unique
``(owner_id, month, threshold)`` row and fire at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from knowledge_engine.budget.models import (
    ALERT_THRESHOLDS,
    BudgetAlert,
    BudgetState,
    day_start,
    hour_start,
    month_bounds,
    month_key,
)
from knowledge_engine.config import settings

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# Handler signature: async (alert: BudgetAlert) -> None
AlertHandler = Callable[[BudgetAlert], Awaitable[None]]

_CREATE_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS spend_ledger (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id   TEXT NOT NULL,
        cost_usd   REAL NOT NULL,
        model      TEXT NOT NULL DEFAULT '',
        operation  TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_spend_owner_created
        ON spend_ledger (owner_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_limits (
        owner_id           TEXT PRIMARY KEY,
        monthly_budget_usd REAL NOT NULL,
        updated_at         TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_alerts (
        owner_id  TEXT NOT NULL,
        month     TEXT NOT NULL,
        threshold REAL NOT NULL,
        fired_at  TEXT NOT NULL,
        PRIMARY KEY (owner_id, month, threshold)
    )
    """,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _or_setting(value: float | None, default: float) -> float:
    return default if value is None else value


class BudgetGate:
    """Tracks spend per owner and enforces the monthly budget and spend windows.

    Args:
        db_path: SQLite file for the ledger (defaults to ``settings.database_path``).
        default_budget_usd: Monthly budget for owners without an override.
        hourly_budget_usd: Per-owner limit for the current UTC hour (0 disables).
        daily_budget_usd: Per-owner limit for the current UTC day (0 disables).
        daily_total_budget_usd: Limit for the current UTC day across all owners
            (0 disables).
        hard_stop: When False, over-limit calls are logged and still allowed.
        clock: Returns the current time; injectable for month-rollover tests.
        alert_handler: Awaited once per fired threshold alert.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        default_budget_usd: float | None = None,
        *,
        hourly_budget_usd: float | None = None,
        daily_budget_usd: float | None = None,
        daily_total_budget_usd: float | None = None,
        hard_stop: bool | None = None,
        clock: Callable[[], datetime] | None = None,
        alert_handler: AlertHandler | None = None,
    ) -> None:
        self._db_path = db_path or settings.database_path
        self._default_budget = _or_setting(default_budget_usd, settings.monthly_budget_usd)
        self._hourly_budget = _or_setting(hourly_budget_usd, settings.hourly_budget_usd)
        self._daily_budget = _or_setting(daily_budget_usd, settings.daily_budget_usd)
        self._daily_total_budget = _or_setting(
            daily_total_budget_usd, settings.daily_total_budget_usd
        )
        self._hard_stop = settings.hard_stop_at_budget if hard_stop is None else hard_stop
        self._clock = clock or _utc_now
        self._alert_handler = alert_handler
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock().astimezone(UTC)

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            for statement in _CREATE_TABLES:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
        return db

    async def _monthly_budget(self, db: aiosqlite.Connection, owner_id: str) -> float:
        cursor = await db.execute(
            "SELECT monthly_budget_usd FROM budget_limits WHERE owner_id = ?", (owner_id,)
        )
        row = await cursor.fetchone()
        return float(row[0]) if row else self._default_budget

    async def _spend_between(
        self,
        db: aiosqlite.Connection,
        owner_id: str | None,
        start: datetime,
        end: datetime,
    ) -> float:
        """Ledger total in ``[start, end)``; all owners when *owner_id* is None."""
        sql = (
            "SELECT COALESCE(SUM(cost_usd), 0) FROM spend_ledger "
            "WHERE created_at >= ? AND created_at < ?"
        )
        params: tuple = (start.isoformat(), end.isoformat())
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params += (owner_id,)
        cursor = await db.execute(sql, params)
        row = await cursor.fetchone()
        return float(row[0]) if row else 0.0

    async def _state(self, db: aiosqlite.Connection, owner_id: str, now: datetime) -> BudgetState:
        month = month_key(now)
        cursor = await db.execute(
            "SELECT threshold FROM budget_alerts "
            "WHERE owner_id = ? AND month = ? ORDER BY threshold",
            (owner_id, month),
        )
        crossed = [float(row[0]) for row in await cursor.fetchall()]
        month_start, next_month = month_bounds(now)
        today = day_start(now)
        # Upper bound is the next month so entries stamped after *now* still count.
        return BudgetState(
            owner_id=owner_id,
            month=month,
            monthly_budget_usd=await self._monthly_budget(db, owner_id),
            current_spend_usd=await self._spend_between(db, owner_id, month_start, next_month),
            alert_thresholds_crossed=crossed,
            hourly_spend_usd=await self._spend_between(db, owner_id, hour_start(now), next_month),
            hourly_budget_usd=self._hourly_budget,
            daily_spend_usd=await self._spend_between(db, owner_id, today, next_month),
            daily_budget_usd=self._daily_budget,
            daily_total_spend_usd=await self._spend_between(db, None, today, next_month),
            daily_total_budget_usd=self._daily_total_budget,
            days_into_month=now.day,
            days_in_month=(next_month - month_start).days,
        )

    # -- Public API ------------------------------------------------------------

    async def get_state(self, owner_id: str) -> BudgetState:
        """Return the owner's budget state for the current month."""
        db = await self._connect()
        try:
            return await self._state(db, owner_id, self._now())
        finally:
            await db.close()

    async def set_budget(self, owner_id: str, monthly_budget_usd: float) -> None:
        """Override the monthly budget for one owner."""
        if monthly_budget_usd < 0:
            raise ValueError("monthly budget must be non-negative")
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT OR REPLACE INTO budget_limits (owner_id, monthly_budget_usd, updated_at)
                VALUES (?, ?, ?)
                """,
                (owner_id, monthly_budget_usd, self._now().isoformat()),
            )
            await db.commit()
            logger.info("Budget for %s set to $%.2f", owner_id, monthly_budget_usd)
        finally:
            await db.close()

    async def authorize(self, owner_id: str, estimated_cost_usd: float = 0.0) -> bool:
        """Decide whether a paid call may proceed.

        Denies when the hourly, daily or all-owner daily window is used up,
        once the month's spend has reached the budget, and when the estimate
        would carry spend past any of those limits. With hard stop disabled
        the same conditions only log a warning.
        """
        state = await self.get_state(owner_id)
        reason = state.denial_reason(estimated_cost_usd)
        if reason is None:
            return True
        if not self._hard_stop:
            logger.warning("Budget limit for %s ignored (hard stop off): %s", owner_id, reason)
            return True
        logger.info("Budget gate denied %s: %s", owner_id, reason)
        return False

    async def record_spend(
        self,
        owner_id: str,
        actual_cost_usd: float,
        *,
        model: str = "",
        operation: str = "",
    ) -> list[BudgetAlert]:
        """Append a measured cost to the ledger, then check alert thresholds.

        Returns the alerts fired by this spend (usually none).
        """
        cost = max(0.0, actual_cost_usd)
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO spend_ledger (owner_id, cost_usd, model, operation, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (owner_id, cost, model, operation, self._now().isoformat()),
            )
            await db.commit()
        finally:
            await db.close()
        logger.debug(
            "Recorded spend %s: $%.6f (%s/%s)", owner_id, cost, operation or "-", model or "-"
        )
        return await self.check_thresholds(owner_id)

    async def check_thresholds(self, owner_id: str) -> list[BudgetAlert]:
        """Fire each crossed threshold alert that has not fired this month."""
        now = self._now()
        fired: list[BudgetAlert] = []
        db = await self._connect()
        try:
            state = await self._state(db, owner_id, now)
            # A zero budget never fires threshold alerts.
            thresholds = ALERT_THRESHOLDS if state.monthly_budget_usd > 0 else ()
            for threshold in thresholds:
                if state.current_spend_usd < state.monthly_budget_usd * threshold:
                    continue
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO budget_alerts (owner_id, month, threshold, fired_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (owner_id, state.month, threshold, now.isoformat()),
                )
                await db.commit()
                if cursor.rowcount > 0:
                    fired.append(
                        BudgetAlert(
                            owner_id=owner_id,
                            month=state.month,
                            threshold=threshold,
                            current_spend_usd=state.current_spend_usd,
                            monthly_budget_usd=state.monthly_budget_usd,
                        )
                    )
        finally:
            await db.close()

        for alert in fired:
            await self._send_alert(alert)
        return fired

    async def _send_alert(self, alert: BudgetAlert) -> None:
        logger.warning(
            "BUDGET ALERT (%s) owner=%s month=%s spend=$%.4f budget=$%.2f",
            alert.kind,
            alert.owner_id,
            alert.month,
            alert.current_spend_usd,
            alert.monthly_budget_usd,
        )
        if self._alert_handler is None:
            return
        try:
            await self._alert_handler(alert)
        except Exception:
            logger.exception("Budget alert handler failed for %s", alert.owner_id)
