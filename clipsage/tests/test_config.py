"""Tests for environment-driven settings."""

import os
import pytest
from pathlib import Path
from unittest.mock import patch

from clipsage.config import Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("CLIPSAGE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def no_env_file(tmp_path):
    return str(tmp_path / "missing.env")


class TestLoadSettings:
    def test_defaults(self, no_env_file):
        settings = load_settings(no_env_file)

        assert settings == Settings()
        assert settings.poll_interval == 0.5
        assert settings.dedup_window == 1
        assert settings.query_embed_timeout == 0.2
        assert settings.capture_initial is True
        assert settings.compact_every == 100
        assert settings.db_path == Path.home() / ".clipsage" / "lancedb"

    def test_environment_overrides(self, monkeypatch, no_env_file):
        monkeypatch.setenv("CLIPSAGE_POLL_INTERVAL", "0.25")
        monkeypatch.setenv("CLIPSAGE_PAGE_SIZE", "20")
        monkeypatch.setenv("CLIPSAGE_CAPTURE_INITIAL", "false")
        monkeypatch.setenv("CLIPSAGE_CHAT_MODEL", "ollama/llama3.2")
        monkeypatch.setenv("CLIPSAGE_MAX_CLIPS", "500")

        settings = load_settings(no_env_file)

        assert settings.poll_interval == 0.25
        assert settings.page_size == 20
        assert settings.capture_initial is False
        assert settings.chat_model == "ollama/llama3.2"
        assert settings.max_clips == 500

    def test_empty_value_switches_optional_off(self, monkeypatch, no_env_file):
        monkeypatch.setenv("CLIPSAGE_EMBEDDING_MODEL", "")
        monkeypatch.setenv("CLIPSAGE_PAGE_SIZE", "  ")

        settings = load_settings(no_env_file)

        assert settings.embedding_model is None
        assert settings.page_size == 50

    def test_data_dir_expands_home(self, monkeypatch, no_env_file):
        monkeypatch.setenv("CLIPSAGE_DATA_DIR", "~/clips")

        settings = load_settings(no_env_file)

        assert settings.data_dir == Path.home() / "clips"
        assert settings.db_path == Path.home() / "clips" / "lancedb"

    def test_reads_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("CLIPSAGE_DEDUP_WINDOW=3\nCLIPSAGE_LOG_LEVEL=DEBUG\n")

        with patch.dict(os.environ):
            settings = load_settings(str(env_file))

        assert settings.dedup_window == 3
        assert settings.log_level == "DEBUG"

    def test_invalid_value_is_rejected(self, monkeypatch, no_env_file):
        monkeypatch.setenv("CLIPSAGE_QUEUE_SIZE", "lots")

        with pytest.raises(ValueError):
            load_settings(no_env_file)
