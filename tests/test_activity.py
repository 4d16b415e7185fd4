"""Tests for the fire-and-forget search activity logger."""

from unittest.mock import AsyncMock, patch

from knowledge_engine.activity import ActivityLogger
from knowledge_engine.db import connect


async def _rows(db_path):
    async with connect(db_path) as db:
        result = await db.execute("SELECT owner_id, query, mode, result_count FROM search_activity")
    return result.rows


async def test_logged_search_is_written(db_path) -> None:
    activity = ActivityLogger(db_path)
    await activity.start()
    try:
        activity.log_search("u1", "favorite color", "hybrid", 3)
        await activity.flush()
    finally:
        await activity.stop()

    assert await _rows(db_path) == [("u1", "favorite color", "hybrid", 3)]


async def test_events_before_start_are_kept(db_path) -> None:
    activity = ActivityLogger(db_path)
    activity.log_search("u1", "early", "keyword", 0)

    await activity.start()
    await activity.stop()

    assert [row[1] for row in await _rows(db_path)] == ["early"]


async def test_write_failure_does_not_propagate(db_path) -> None:
    activity = ActivityLogger(db_path)
    await activity.start()
    with patch.object(activity, "_write", AsyncMock(side_effect=RuntimeError("db locked"))):
        activity.log_search("u1", "q", "hybrid", 1)
        await activity.flush()

    assert activity.running
    await activity.stop()


async def test_full_queue_drops_events(db_path) -> None:
    activity = ActivityLogger(db_path, queue_size=2)

    for i in range(5):
        activity.log_search("u1", f"q{i}", "hybrid", 0)

    assert activity.dropped == 3


async def test_stop_without_start_is_noop(db_path) -> None:
    activity = ActivityLogger(db_path)
    await activity.stop()
    assert not activity.running
