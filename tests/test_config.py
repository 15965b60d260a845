"""Tests for environment-driven configuration."""

from __future__ import annotations

import os

import pytest

from parley.config import DEFAULT_RETRY_DELAYS_SECS, ChatConfig, get_chat_config, load_env


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("PARLEY_"):
            monkeypatch.delenv(key)


class TestChatConfig:
    def test_defaults(self):
        config = get_chat_config()

        assert config == ChatConfig()
        assert config.http is None and config.xmpp is None

    def test_values_from_environment(self, monkeypatch):
        monkeypatch.setenv("PARLEY_MESSAGE_TIMEOUT_SECS", "30")
        monkeypatch.setenv("PARLEY_RETRY_DELAYS", "0.5, 2")
        monkeypatch.setenv("PARLEY_SKIP_WELCOME", "yes")
        monkeypatch.setenv("PARLEY_AGENT_JOIN_TIMEOUT_SECS", "60")
        monkeypatch.setenv("PARLEY_HTTP_URL", "http://localhost:8080/")
        monkeypatch.setenv("PARLEY_HTTP_PASSWORD", "secret")

        config = get_chat_config()

        assert config.message_timeout_secs == 30.0
        assert config.retry_delays_secs == (0.5, 2.0)
        assert config.skip_welcome is True
        assert config.agent.join_timeout_secs == 60.0
        assert config.http.url == "http://localhost:8080"
        assert config.http.password == "secret"

    def test_blank_retry_delays_fall_back(self, monkeypatch):
        monkeypatch.setenv("PARLEY_RETRY_DELAYS", "  ")
        assert get_chat_config().retry_delays_secs == DEFAULT_RETRY_DELAYS_SECS

    def test_xmpp_needs_both_jids(self, monkeypatch):
        monkeypatch.setenv("PARLEY_XMPP_JID", "widget@example.org")
        assert get_chat_config().xmpp is None

        monkeypatch.setenv("PARLEY_XMPP_AGENT_JID", "agent@example.org")
        monkeypatch.setenv("PARLEY_XMPP_PORT", "5223")
        xmpp = get_chat_config().xmpp
        assert xmpp.agent_jid == "agent@example.org"
        assert xmpp.port == 5223 and xmpp.server is None


class TestLoadEnv:
    def test_reads_quoted_values_and_skips_comments(self, tmp_path, monkeypatch):
        # Registered with monkeypatch so the loaded values are removed afterwards.
        monkeypatch.setenv("PARLEY_HTTP_URL", "")
        monkeypatch.setenv("PARLEY_DEBUG", "")
        env = tmp_path / ".env"
        env.write_text('# comment\nPARLEY_HTTP_URL = "http://bot.local"\nPARLEY_DEBUG=1\n')

        load_env(env)

        assert os.environ["PARLEY_HTTP_URL"] == "http://bot.local"
        assert get_chat_config().debug is True

    def test_missing_file_is_ignored(self, tmp_path):
        load_env(tmp_path / "absent.env")
