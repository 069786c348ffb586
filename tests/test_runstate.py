"""Tests for TaskRunStateCoordinator — task lock and run-state transitions."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from taskbot.core.background.runstate import TaskRunStateCoordinator
from taskbot.core.errors import AlreadyLocked, NotFoundError, ValidationError
from taskbot.memory.store import MemoryStore


@pytest.fixture
def runstate(store, cfg):
    return TaskRunStateCoordinator(store, cfg)


@pytest.fixture
def task(store, agent_id):
    return store.create_task(agent_id, "Write report", assignee_type="agent")


def test_acquire_sets_running(runstate, task):
    locked = runstate.acquire(task["id"])
    assert locked["agent_run_state"] == "running"
    assert locked["lock_expires_at"] is not None
    assert locked["last_agent_run_at"] is not None


def test_second_acquire_fails(runstate, task):
    runstate.acquire(task["id"])
    with pytest.raises(AlreadyLocked) as exc:
        runstate.acquire(task["id"])
    assert exc.value.task_id == task["id"]


def test_concurrent_acquire_has_one_winner(cfg, store, task):
    workers = 8
    coordinators = [TaskRunStateCoordinator(MemoryStore(cfg.database.path), cfg) for _ in range(workers)]
    barrier = threading.Barrier(workers)

    def attempt(coordinator):
        barrier.wait()
        try:
            coordinator.acquire(task["id"])
        except AlreadyLocked:
            return False
        return True

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, coordinators))

    assert outcomes.count(True) == 1
    assert store.get_task(task["id"])["agent_run_state"] == "running"


def test_expired_lock_can_be_taken(runstate, task):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    runstate.acquire(task["id"], ttl_minutes=30, now=past)
    assert runstate.acquire(task["id"])["agent_run_state"] == "running"


def test_acquire_missing_task(runstate):
    with pytest.raises(NotFoundError):
        runstate.acquire("missing")


def test_finalize_success(runstate, store, task):
    runstate.acquire(task["id"])
    runstate.finalize(task["id"], success=True)
    after = store.get_task(task["id"])
    assert after["agent_run_state"] == "completed"
    assert after["lock_expires_at"] is None


def test_finalize_failure_comments(runstate, store, task):
    runstate.acquire(task["id"])
    runstate.finalize(task["id"], success=False, error="model unavailable")
    after = store.get_task(task["id"])
    assert after["agent_run_state"] == "failed"
    assert after["failure_reason"] == "model unavailable"
    comment = store.list_comments(task_id=task["id"])[0]
    assert comment["author_type"] == "system"
    assert "model unavailable" in comment["content"]


def test_finalize_keeps_terminal_tool_state(runstate, store, task):
    runstate.acquire(task["id"])
    runstate.request_input(task["id"], "Which format?")
    runstate.finalize(task["id"], success=True)
    after = store.get_task(task["id"])
    assert after["agent_run_state"] == "needs_input"
    assert after["status"] == "waiting_on"


def test_mark_complete(runstate, store, task, agent_id):
    runstate.acquire(task["id"])
    result = runstate.mark_complete(task["id"], "Sent the report")
    assert result["stopped"] is True
    after = store.get_task(task["id"])
    assert after["status"] == "done"
    assert after["completed_at"] is not None
    assert after["agent_run_state"] == "completed"
    assert store.list_comments(task_id=task["id"])[0]["comment_type"] == "resolution"
    assert store.list_notifications(agent_id)[0]["type"] == "task_update"


def test_request_input_notifies(runstate, store, task, agent_id):
    runstate.request_input(task["id"], "Which format?")
    note = store.list_notifications(agent_id)[0]
    assert note["type"] == "input_needed"
    assert note["content"] == "Which format?"
    assert store.list_comments(task_id=task["id"])[0]["comment_type"] == "question"


def test_release_validates_state(runstate, task):
    with pytest.raises(ValidationError):
        runstate.release(task["id"], "running")


def test_mark_complete_wrong_agent(runstate, task):
    with pytest.raises(NotFoundError):
        runstate.mark_complete(task["id"], "done", agent_id="intruder")
