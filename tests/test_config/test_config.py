"""
Tests for configuration loading, logging setup and the Runtime.

Covers:
- Defaults and validation (extra fields rejected)
- deep_merge, YAML file, env overrides and precedence
- configure_logging handlers and console level
- Runtime.from_config wiring
"""

import logging

import pytest
import structlog
from pydantic import ValidationError

from agentrun.config import AppConfig, deep_merge, load_config
from agentrun.config.schema import AgentConfig, LoggingConfig
from agentrun.history import InMemoryHistoryStore, JsonFileHistoryStore
from agentrun.logging import configure_logging
from agentrun.logging.setup import _console_level
from agentrun.runtime import Runtime
from agentrun.telemetry import NoopTracer, TelemetryExporter


ENV_VARS = [
    "AGENTRUN_MODEL",
    "AGENTRUN_LOG_LEVEL",
    "AGENTRUN_HISTORY_MAX_ENTRIES",
    "AGENTRUN_EXPORTER_URL",
    "AGENTRUN_PUBLIC_KEY",
    "AGENTRUN_GRACE_WINDOW",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# -- Tests: schema -----------------------------------------------------------


class TestSchema:
    """Tests for defaults and validation."""

    def test_defaults(self):
        config = AppConfig()
        assert config.streaming.grace_window == 0.1
        assert config.streaming.max_buffer == 0
        assert config.history.max_entries == 0
        assert config.history.store == "memory"
        assert config.exporter.enabled is False
        assert config.exporter.queue.default_retries == 5
        assert config.agent.max_steps is None
        assert config.agent.forward_event_types == ["tool-call", "tool-result"]

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(streaming={"grace_window": 0.1, "unknown": 1})

    def test_negative_values_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(streaming={"grace_window": -1})
        with pytest.raises(ValidationError):
            AgentConfig(max_steps=0)


# -- Tests: loader -----------------------------------------------------------


class TestDeepMerge:
    """Tests for the recursive merge."""

    def test_nested_merge(self):
        assert deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"b": 99}, "e": 4}) == {
            "a": {"b": 99, "c": 2},
            "e": 4,
        }

    def test_inputs_untouched(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_non_dict_replaces(self):
        assert deep_merge({"a": {"b": 1}}, {"a": 5}) == {"a": 5}


class TestLoadConfig:
    """Tests for file, env and override precedence."""

    def test_no_file(self):
        assert load_config() == AppConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == AppConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "agentrun.yaml"
        path.write_text(
            "streaming:\n"
            "  grace_window: 0.5\n"
            "history:\n"
            "  max_entries: 20\n"
            "  store: json\n"
            "agent:\n"
            "  max_steps: 4\n"
        )
        config = load_config(path)
        assert config.streaming.grace_window == 0.5
        assert config.history.max_entries == 20
        assert config.history.store == "json"
        assert config.agent.max_steps == 4

    def test_invalid_yaml_values(self, tmp_path):
        path = tmp_path / "agentrun.yaml"
        path.write_text("history:\n  store: sqlite\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("AGENTRUN_MODEL", "claude-test")
        monkeypatch.setenv("AGENTRUN_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("AGENTRUN_HISTORY_MAX_ENTRIES", "7")
        monkeypatch.setenv("AGENTRUN_EXPORTER_URL", "https://telemetry.test")
        monkeypatch.setenv("AGENTRUN_PUBLIC_KEY", "pk")
        monkeypatch.setenv("AGENTRUN_GRACE_WINDOW", "0.25")

        config = load_config()
        assert config.llm.model == "claude-test"
        assert config.logging.level == "debug"
        assert config.history.max_entries == 7
        assert config.exporter.enabled is True
        assert config.exporter.base_url == "https://telemetry.test"
        assert config.exporter.public_key == "pk"
        assert config.streaming.grace_window == 0.25

    def test_precedence(self, tmp_path, monkeypatch):
        path = tmp_path / "agentrun.yaml"
        path.write_text("llm:\n  model: from-file\n  timeout: 5\n")
        monkeypatch.setenv("AGENTRUN_MODEL", "from-env")

        assert load_config(path).llm.model == "from-env"
        config = load_config(path, overrides={"llm": {"model": "from-caller"}})
        assert config.llm.model == "from-caller"
        assert config.llm.timeout == 5


# -- Tests: logging ----------------------------------------------------------


@pytest.fixture
def restore_logging():
    handlers = list(logging.root.handlers)
    yield
    for handler in logging.root.handlers:
        handler.close()
    logging.root.handlers[:] = handlers
    structlog.reset_defaults()


class TestLogging:
    """Tests for configure_logging."""

    @pytest.mark.parametrize(
        "level, verbose, expected",
        [
            ("warning", 0, logging.WARNING),
            ("warning", 1, logging.INFO),
            ("warning", 2, logging.DEBUG),
            ("error", 5, logging.DEBUG),
            ("info", 0, logging.INFO),
        ],
    )
    def test_console_level(self, level, verbose, expected):
        assert _console_level(LoggingConfig(level=level, verbose=verbose)) == expected

    def test_console_only(self, restore_logging):
        configure_logging(LoggingConfig(level="info"))
        handlers = logging.root.handlers
        assert len(handlers) == 1
        assert handlers[0].level == logging.INFO

    def test_file_pipeline(self, tmp_path, restore_logging):
        log_file = tmp_path / "logs" / "agentrun.jsonl"
        configure_logging(LoggingConfig(file=log_file), quiet=True)

        handlers = logging.root.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)
        assert handlers[0].level == logging.DEBUG
        assert log_file.parent.is_dir()


# -- Tests: Runtime ----------------------------------------------------------


class TestRuntime:
    """Tests for assembling shared services."""

    @pytest.mark.asyncio
    async def test_defaults(self):
        runtime = Runtime.from_config(AppConfig())
        assert isinstance(runtime.store, InMemoryHistoryStore)
        assert runtime.exporter is None
        assert isinstance(runtime.tracer, NoopTracer)
        await runtime.aclose()

    @pytest.mark.asyncio
    async def test_json_store_and_exporter(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTRUN_SECRET_KEY", "sk")
        config = AppConfig(
            history={"store": "json", "directory": str(tmp_path)},
            exporter={"enabled": True, "public_key": "pk"},
        )
        runtime = Runtime.from_config(config)
        assert isinstance(runtime.store, JsonFileHistoryStore)
        assert isinstance(runtime.exporter, TelemetryExporter)
        await runtime.aclose()

    def test_history_for_is_cached(self):
        runtime = Runtime(AppConfig(history={"max_entries": 3}))
        recorder = runtime.history_for("agent-a")
        assert runtime.history_for("agent-a") is recorder
        assert runtime.history_for("agent-b") is not recorder
        assert recorder.max_entries == 3

    @pytest.mark.asyncio
    async def test_create_agent_wiring(self, make_provider, text):
        runtime = Runtime(AppConfig(agent={"max_steps": 3}, streaming={"grace_window": 0}))
        agent = runtime.create_agent("helper", make_provider([text("hi")]), agent_id="helper-1")

        assert agent.id == "helper-1"
        assert agent.bus is runtime.bus
        assert agent.history is runtime.history_for("helper-1")
        assert agent.max_steps == 3
        assert agent.streaming.grace_window == 0

        result = await agent.generate_text("hello")
        records = await runtime.store.list_records("helper-1")
        assert [r.id for r in records] == [result.run_id]

    def test_create_agent_kwargs_win(self, make_provider):
        runtime = Runtime(AppConfig())
        agent = runtime.create_agent(
            "helper", make_provider(), config=AgentConfig(max_steps=2), instructions="Be brief"
        )
        assert agent.max_steps == 2
        assert agent.instructions == "Be brief"
