"""Tests for the streamchat CLI."""

from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from conftest import FakeTransport, chunk

from streamchat.cli import main
from streamchat.config import ChatConfig
from streamchat.credentials import StaticCredentials
from streamchat.engine import ChatEngine
from streamchat.errors import ProviderError
from streamchat.store.sqlite import SqliteMessageStore
from streamchat.types import StreamChunk


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "streamchat.yaml"
    path.write_text(yaml.dump({
        "provider": {"default_model": "openai/gpt-4o-mini"},
        "db_path": str(tmp_path / "chats.db"),
    }))
    return path


def _fake_engine(transport):
    def factory(config: ChatConfig) -> ChatEngine:
        return ChatEngine(
            config=config,
            store=SqliteMessageStore(config.db_path),
            transport=transport,
            credentials=StaticCredentials("sk-test"),
        )
    return factory


class TestCli:
    def test_new_and_history(self, config_file):
        runner = CliRunner()

        created = runner.invoke(main, ["--config", str(config_file), "new", "--title", "Demo"])
        assert created.exit_code == 0, created.output
        chat_id = created.output.strip()

        shown = runner.invoke(main, ["--config", str(config_file), "history", chat_id])
        assert shown.exit_code == 0, shown.output
        assert "Demo" in shown.output

    def test_history_unknown_chat(self, config_file):
        result = CliRunner().invoke(main, ["--config", str(config_file), "history", "missing"])
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_history_lists_web_citations(self, config_file):
        runner = CliRunner()
        chat_id = runner.invoke(main, ["--config", str(config_file), "new"]).output.strip()
        cite = {"type": "url_citation",
                "url_citation": {"url": "https://example.com/a", "title": "Example Source"}}
        transport = FakeTransport([[
            chunk("Found it"),
            StreamChunk(annotations=[cite], finish_reason="stop"),
        ]])

        with patch.object(ChatEngine, "from_config", _fake_engine(transport)):
            sent = runner.invoke(main, ["--config", str(config_file), "send", "--web", chat_id, "Search"])
        shown = runner.invoke(main, ["--config", str(config_file), "history", chat_id])

        assert sent.exit_code == 0, sent.output
        assert "Example Source" in shown.output
        assert "https://example.com/a" in shown.output

    def test_send_streams_reply(self, config_file):
        runner = CliRunner()
        chat_id = runner.invoke(main, ["--config", str(config_file), "new"]).output.strip()
        transport = FakeTransport([[chunk("Hello"), chunk(" world", finish="stop")]])

        with patch.object(ChatEngine, "from_config", _fake_engine(transport)):
            result = runner.invoke(main, ["--config", str(config_file), "send", chat_id, "Hi"])

        assert result.exit_code == 0, result.output
        assert "Hello world" in result.output
        assert transport.payloads[0]["messages"] == [{"role": "user", "content": "Hi"}]

    def test_send_failure_exits_nonzero(self, config_file):
        runner = CliRunner()
        chat_id = runner.invoke(main, ["--config", str(config_file), "new"]).output.strip()
        transport = FakeTransport([[ProviderError(status_code=402, message="Payment required")]])

        with patch.object(ChatEngine, "from_config", _fake_engine(transport)):
            result = runner.invoke(main, ["--config", str(config_file), "send", chat_id, "Hi"])

        assert result.exit_code == 1
        assert "insufficient_quota" in result.output

    def test_resume_with_nothing_pending(self, config_file):
        result = CliRunner().invoke(main, ["--config", str(config_file), "resume"])
        assert result.exit_code == 0, result.output
        assert "Completed: 0" in result.output

    def test_invalid_config(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("provider: [unclosed")
        result = CliRunner().invoke(main, ["--config", str(bad), "resume"])
        assert result.exit_code != 0
        assert "Invalid YAML" in result.output
