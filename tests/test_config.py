"""Tests for taskbot.core.config."""

from taskbot.core.config import Config, load_config


def test_defaults():
    cfg = Config()
    assert cfg.assistant.model == "openai/gpt-4o"
    assert cfg.background.default_timezone == "America/New_York"
    assert cfg.background.dispatcher.failure_threshold == 3
    assert cfg.background.step_limits.job == 25
    assert cfg.background.step_limits.chat == 5
    assert cfg.mail_enabled is False


def test_yaml_load(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "assistant:\n"
        "  model: anthropic/claude-sonnet-4-5-20250929\n"
        "background:\n"
        "  dispatcher:\n"
        "    poll_interval_s: 15\n"
    )
    cfg = load_config(path)
    assert cfg.assistant.model.startswith("anthropic/")
    assert cfg.background.dispatcher.poll_interval_s == 15
    # untouched siblings keep defaults
    assert cfg.background.dispatcher.max_attempts == 3


def test_missing_yaml_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "nope.yaml")
    assert cfg.database.path == "data/taskbot.db"


def test_overrides_merge_over_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("background:\n  task_worker:\n    batch_size: 9\n")
    cfg = load_config(path, overrides={"background": {"task_worker": {"enabled": False}}})
    assert cfg.background.task_worker.batch_size == 9
    assert cfg.background.task_worker.enabled is False


def test_env_beats_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("database:\n  path: from-yaml.db\n")
    monkeypatch.setenv("TASKBOT_DATABASE__PATH", "from-env.db")
    cfg = load_config(path)
    assert cfg.database.path == "from-env.db"


def test_api_key_lookup():
    cfg = Config(providers={"anthropic": {"api_key": "sk-ant"}, "openai": {"api_key": "sk-oai"}})
    assert cfg.get_api_key("anthropic/claude-3") == "sk-ant"
    assert cfg.get_api_key("openai/gpt-4o") == "sk-oai"
    assert cfg.get_api_key("mystery/model") == "sk-ant"


def test_mail_enabled():
    cfg = Config(mail={"api_key": "re_123", "from_address": "bot@example.com"})
    assert cfg.mail_enabled is True
