"""Tests for config module."""

from pathlib import Path

import pytest
from pagebinder.config import (
    API_KEY_ENV,
    DEFAULT_MODEL,
    PipelineConfig,
    Settings,
    SettingsStore,
)
from pagebinder.extraction import DEFAULT_ANALYSIS_PROMPT


class TestPipelineConfig:
    """Tests for pipeline configuration."""

    def test_defaults(self):
        """Defaults match the retry and pacing policy."""
        config = PipelineConfig()
        assert config.model == DEFAULT_MODEL
        assert (config.max_attempts, config.retry_delay, config.page_delay) == (3, 2.0, 1.0)
        assert config.temperature_step == 0.2
        assert config.output_dir == Path("./output")

    def test_output_dir_converted(self):
        """String paths become Path objects."""
        assert PipelineConfig(output_dir="books").output_dir == Path("books")

    @pytest.mark.parametrize("field,value", [
        ("max_attempts", 0),
        ("max_tokens", 0),
        ("retry_delay", -1),
        ("page_delay", -0.5),
        ("request_timeout", 0),
        ("api_url", ""),
        ("allowed_origins", ("*",)),
    ])
    def test_invalid(self, field, value):
        """Out-of-range values are rejected."""
        with pytest.raises(ValueError):
            PipelineConfig(**{field: value})

    def test_from_env(self, monkeypatch):
        """Environment variables override defaults, explicit overrides win."""
        monkeypatch.setenv("PAGEBINDER_MODEL", "other-model")
        monkeypatch.setenv("PAGEBINDER_PAGE_DELAY", "0.25")
        monkeypatch.setenv("PAGEBINDER_OUTPUT_DIR", "/tmp/env-books")
        config = PipelineConfig.from_env(output_dir=Path("explicit"))
        assert config.model == "other-model"
        assert config.page_delay == 0.25
        assert config.output_dir == Path("explicit")

    def test_allowed_origins_from_env(self, monkeypatch):
        """Extra origins are a comma-separated list; trailing slashes are dropped."""
        monkeypatch.setenv("PAGEBINDER_ALLOWED_ORIGINS", "chrome-extension://abc/, https://books.example ,")
        config = PipelineConfig.from_env()
        assert config.allowed_origins == ("chrome-extension://abc", "https://books.example")


class TestSettings:
    """Tests for user settings."""

    def test_default_prompt(self):
        """A blank prompt falls back to the default."""
        assert Settings(analysis_prompt="  ").prompt == DEFAULT_ANALYSIS_PROMPT
        assert Settings(analysis_prompt="Custom").prompt == "Custom"

    def test_has_credential(self):
        """Whitespace is not a credential."""
        assert not Settings(api_key="  ").has_credential
        assert Settings(api_key="k").has_credential


class TestSettingsStore:
    """Tests for settings persistence."""

    @pytest.fixture(autouse=True)
    def no_env_key(self, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)

    def test_missing_file(self, tmp_path):
        """No file yields empty settings."""
        assert SettingsStore(tmp_path / "none.json").load() == Settings()

    def test_round_trip(self, tmp_path):
        """Saved settings load back, with the key trimmed."""
        store = SettingsStore(tmp_path / "nested" / "settings.json")
        store.save(Settings(api_key=" key ", analysis_prompt="Prompt"))
        assert store.load() == Settings(api_key="key", analysis_prompt="Prompt")

    def test_env_overrides_key(self, tmp_path, monkeypatch):
        """The environment key wins unless explicitly excluded."""
        store = SettingsStore(tmp_path / "settings.json")
        store.save(Settings(api_key="stored"))
        monkeypatch.setenv(API_KEY_ENV, "from-env")
        assert store.load().api_key == "from-env"
        assert store.load(include_env=False).api_key == "stored"

    def test_corrupt_file(self, tmp_path):
        """Unreadable JSON falls back to defaults."""
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        assert SettingsStore(path).load() == Settings()
