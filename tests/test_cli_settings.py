"""Tests for the 'provider', 'prompt' and 'db' CLI command groups."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from branchchat.db import get_connection, init_db
from branchchat.db.prompts import list_prompts
from cli.main import app

runner = CliRunner()


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    monkeypatch.setattr("branchchat.config.settings.workspace_dir", tmp_path)
    monkeypatch.setattr("cli.context.settings.cli_config_dir", tmp_path / ".branchchat_cli")
    monkeypatch.setattr("branchchat.config.settings.provider_name", "Builtin")
    monkeypatch.setattr("branchchat.config.settings.provider_models", ["fast"])
    return tmp_path


def test_db_init_creates_database(clean_env):
    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 0
    assert (clean_env / "conversations.db").exists()


class TestProviderCommands:
    def test_add_then_list_models(self, clean_env) -> None:
        result = runner.invoke(
            app,
            ["provider", "add", "Local", "--base-url", "http://localhost:11434/v1",
             "-m", "llama3", "-m", "qwen"],
        )
        assert result.exit_code == 0
        assert "✅ Provider saved: Local (2 models)" in result.stdout

        models = runner.invoke(app, ["provider", "models"])
        assert "Builtin: fast" in models.stdout
        assert "Local: llama3" in models.stdout
        assert "Local: qwen" in models.stdout

        listed = runner.invoke(app, ["provider", "list"])
        assert "* Builtin" in listed.stdout
        assert "Local" in listed.stdout

    def test_invalid_name_is_rejected(self, clean_env) -> None:
        result = runner.invoke(app, ["provider", "add", "Bad:Name", "--base-url", "http://x"])
        assert result.exit_code == 1
        assert "❌" in result.stdout

    def test_remove_unknown(self, clean_env) -> None:
        result = runner.invoke(app, ["provider", "remove", "Ghost"])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_remove(self, clean_env) -> None:
        runner.invoke(app, ["provider", "add", "Local", "--base-url", "http://x", "-m", "a"])
        result = runner.invoke(app, ["provider", "remove", "Local"])
        assert result.exit_code == 0
        assert "Local: a" not in runner.invoke(app, ["provider", "models"]).stdout


class TestPromptCommands:
    def test_add_list_remove(self, clean_env) -> None:
        result = runner.invoke(app, ["prompt", "add", "Terse", "Answer in one sentence."])
        assert result.exit_code == 0
        assert "✅ System prompt created: Terse" in result.stdout

        conn = get_connection()
        init_db(conn)
        try:
            prompt_id = list_prompts(conn)[0].id
        finally:
            conn.close()

        listed = runner.invoke(app, ["prompt", "list"])
        assert "Terse" in listed.stdout and prompt_id in listed.stdout

        assert runner.invoke(app, ["prompt", "remove", prompt_id]).exit_code == 0
        assert "No system prompts found." in runner.invoke(app, ["prompt", "list"]).stdout

    def test_blank_prompt_is_rejected(self, clean_env) -> None:
        result = runner.invoke(app, ["prompt", "add", "Empty", "  "])
        assert result.exit_code == 1
