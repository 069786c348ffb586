"""Tests for schedule evaluation, timestamps and step memoization."""

from datetime import datetime, timezone

import pytest

from taskbot.core.cron.schedule import (
    compute_next_run,
    format_local,
    normalize_run_at,
    resolve_timezone,
)
from taskbot.core.cron.steps import StepRunner
from taskbot.core.errors import ValidationError
from taskbot.core.timeutil import parse_iso, to_iso

UTC = timezone.utc


# ── compute_next_run ───────────────────────────────────────


def test_next_run_in_job_timezone():
    after = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)  # 07:00 in New York
    nxt = compute_next_run("0 9 * * *", "America/New_York", after)
    assert nxt == datetime(2026, 1, 5, 14, 0, tzinfo=UTC)


def test_next_run_is_strictly_after():
    at_fire = datetime(2026, 1, 5, 14, 0, tzinfo=UTC)
    nxt = compute_next_run("0 9 * * *", "America/New_York", at_fire)
    assert nxt == datetime(2026, 1, 6, 14, 0, tzinfo=UTC)


def test_next_run_keeps_wall_clock_across_dst():
    # 2026-03-08 is the US spring-forward day
    before = compute_next_run("0 9 * * *", "America/New_York", datetime(2026, 3, 6, 15, 0, tzinfo=UTC))
    after = compute_next_run("0 9 * * *", "America/New_York", datetime(2026, 3, 7, 15, 0, tzinfo=UTC))
    assert before == datetime(2026, 3, 7, 14, 0, tzinfo=UTC)
    assert after == datetime(2026, 3, 8, 13, 0, tzinfo=UTC)


def test_weekday_cron():
    # Monday 2026-01-05; next Monday 09:00 UTC is 2026-01-12
    nxt = compute_next_run("0 9 * * 1", "UTC", datetime(2026, 1, 5, 10, 0, tzinfo=UTC))
    assert nxt == datetime(2026, 1, 12, 9, 0, tzinfo=UTC)


def test_weekday_range_and_sunday():
    saturday = datetime(2026, 1, 10, 10, 0, tzinfo=UTC)
    assert compute_next_run("0 9 * * 1-5", "UTC", saturday) == datetime(2026, 1, 12, 9, 0, tzinfo=UTC)
    assert compute_next_run("0 9 * * 0", "UTC", saturday) == datetime(2026, 1, 11, 9, 0, tzinfo=UTC)
    assert compute_next_run("0 9 * * 7", "UTC", saturday) == datetime(2026, 1, 11, 9, 0, tzinfo=UTC)
    assert compute_next_run("0 9 * * mon-fri", "UTC", saturday) == datetime(2026, 1, 12, 9, 0, tzinfo=UTC)


def test_invalid_cron():
    with pytest.raises(ValidationError):
        compute_next_run("not a cron", "UTC", datetime(2026, 1, 1, tzinfo=UTC))


def test_unknown_timezone():
    with pytest.raises(ValidationError):
        resolve_timezone("Mars/Olympus_Mons")


# ── normalize_run_at / timestamps ──────────────────────────


def test_normalize_naive_is_utc():
    assert normalize_run_at("2026-01-31T20:00:00") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)


def test_normalize_offset_converted():
    assert normalize_run_at("2026-01-31T23:00:00+03:00") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)


def test_normalize_z_suffix():
    assert normalize_run_at("2026-01-31T20:00:00Z") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)


def test_normalize_garbage():
    with pytest.raises(ValidationError):
        normalize_run_at("next tuesday-ish")


def test_iso_roundtrip_is_sortable():
    a = to_iso(datetime(2026, 1, 1, 9, 0, tzinfo=UTC))
    b = to_iso(datetime(2026, 1, 1, 10, 0, tzinfo=UTC))
    assert a == "2026-01-01T09:00:00.000000Z"
    assert a < b
    assert parse_iso(a) == datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def test_format_local():
    dt = datetime(2026, 1, 31, 20, 0, tzinfo=UTC)
    assert format_local(dt, "America/New_York") == "Sat, Jan 31, 3:00 PM"


# ── StepRunner ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_step_runs_once(store):
    store.insert_job({
        "id": "j1", "agent_id": "a1", "job_type": "reminder", "title": "t",
        "schedule_type": "once", "timezone": "UTC",
        "next_run_at": "2026-01-01T00:00:00.000000Z", "action_type": "notify",
    })
    store.create_execution("e1", "j1", "a1")
    calls = []

    def work(x):
        calls.append(x)
        return {"value": x}

    steps = StepRunner(store, "e1")
    assert await steps.run("double", work, 2) == {"value": 2}
    assert await steps.run("double", work, 99) == {"value": 2}
    assert calls == [2]
    assert store.get_execution("e1")["step_cursor"] == "double"


@pytest.mark.asyncio
async def test_step_awaits_coroutines(store):
    store.insert_job({
        "id": "j1", "agent_id": "a1", "job_type": "reminder", "title": "t",
        "schedule_type": "once", "timezone": "UTC",
        "next_run_at": "2026-01-01T00:00:00.000000Z", "action_type": "notify",
    })
    store.create_execution("e1", "j1", "a1")

    async def work():
        return [1, 2, 3]

    assert await StepRunner(store, "e1").run("list", work) == [1, 2, 3]
    # replay from a fresh runner reads the stored output
    assert await StepRunner(store, "e1").run("list", work) == [1, 2, 3]
