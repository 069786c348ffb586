"""Shared fixtures: tmp SQLite store, test config, wired runtime."""

from __future__ import annotations

import pytest

from taskbot.core.config.schema import Config
from taskbot.core.runtime import Runtime
from taskbot.memory.store import MemoryStore


@pytest.fixture
def cfg(tmp_path):
    return Config(
        assistant={"system_prompt": "You are TestBot."},
        database={"path": str(tmp_path / "test.db")},
        embedding={"enabled": False},
        research={"model": ""},
        background={
            "default_timezone": "UTC",
            "dispatcher": {"retry_backoff_s": 0, "failure_threshold": 3},
            "project_work": {"cooldown_s": 0},
        },
    )


@pytest.fixture
def store(cfg):
    return MemoryStore(cfg.database.path)


@pytest.fixture
def agent_id(store):
    return store.create_agent("u1", user_name="Alice", user_email="alice@example.com", timezone="UTC")


@pytest.fixture
def runtime(cfg, store):
    return Runtime(cfg, db=store)
