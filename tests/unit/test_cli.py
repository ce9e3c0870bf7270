"""Tests for the command line interface."""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner
from codemate import CodeMate
from codemate.cli import TerminalEvents, cli
from codemate.errors import TransportError
from codemate.llm import Echo
from codemate.settings import InMemory
from codemate.store import InMemory as InMemoryStore


@pytest.fixture
def app():
    return CodeMate(
        llm=Echo(), store=InMemoryStore(), settings=InMemory(), events=TerminalEvents()
    )


@pytest.fixture
def run(app):
    """Invokes the CLI with every command wired to the same in-memory app."""
    runner = CliRunner()

    def invoke(*args, input=None):
        with patch("codemate.cli._make_app", return_value=app):
            return runner.invoke(cli, list(args), input=input)

    return invoke


class TestTopLevel:
    """Test the group itself."""

    def test_version(self, run):
        """--version prints the package version."""
        result = run("--version")
        assert result.exit_code == 0
        assert "codemate" in result.output

    def test_help_lists_commands(self, run):
        """Every command group shows up in --help."""
        result = run("--help")
        for name in ("chat", "rules", "profiles", "conversations", "models"):
            assert name in result.output


class TestRulesCommands:
    """Test rules and profiles commands."""

    def test_add_list_remove_rule(self, run, app):
        """Rules can be created, listed and deleted."""
        result = run("rules", "add", "Shout", "--kind", "add-suffix", "--suffix", "!")
        assert result.exit_code == 0, result.output
        (rule,) = app.rules.list_rules()

        listing = run("rules", "list")
        assert "Shout" in listing.output
        assert "suffix '!'" in listing.output

        assert run("rules", "remove", rule.id).exit_code == 0
        assert app.rules.list_rules() == []

    def test_invalid_rule_reports_error(self, run, app):
        """Validation errors exit non-zero with the message."""
        result = run("rules", "add", "Bad", "--kind", "pattern-replace", "--pattern", "(")
        assert result.exit_code != 0
        assert "Invalid regex pattern" in result.output
        assert app.rules.list_rules() == []

    def test_remove_unknown_rule(self, run):
        """Removing an unknown rule fails cleanly."""
        result = run("rules", "remove", "nope")
        assert result.exit_code != 0
        assert "Rule not found: nope" in result.output

    def test_profiles(self, run, app):
        """Profiles can be created, activated, listed and deactivated."""
        rule = app.rules.create_rule({"name": "p", "kind": "add-prefix", "prefix": "> "})
        result = run("profiles", "add", "Quote", "--rule", rule.id)
        assert result.exit_code == 0, result.output
        (profile,) = app.rules.list_profiles()
        assert profile.rule_ids == [rule.id]

        assert run("profiles", "activate", profile.id).exit_code == 0
        assert app.rules.get_active_profile().id == profile.id
        assert f"* {profile.id}" in run("profiles", "list").output

        assert "disabled" in run("profiles", "activate").output
        assert app.rules.get_active_profile() is None

    def test_activate_unknown_profile(self, run):
        """Activating an unknown profile fails cleanly."""
        result = run("profiles", "activate", "nope")
        assert result.exit_code != 0
        assert "Profile not found" in result.output


    def test_update_rule_fields_and_switch(self, run, app):
        """update changes only the given fields and can switch a rule off and on."""
        rule = app.rules.create_rule(
            {"name": "Strip", "kind": "pattern-replace", "pattern": "a", "replacement": "b"}
        )

        result = run("rules", "update", rule.id, "--pattern", "x+", "--disable")
        assert result.exit_code == 0, result.output
        updated = app.rules.get_rule(rule.id)
        assert updated.pattern == "x+"
        assert updated.replacement == "b"
        assert updated.enabled is False

        assert run("rules", "update", rule.id, "--enable").exit_code == 0
        assert app.rules.get_rule(rule.id).enabled is True

    def test_update_rule_rejects_bad_pattern(self, run, app):
        """An invalid change is reported and the rule is left as it was."""
        rule = app.rules.create_rule({"name": "S", "kind": "pattern-replace", "pattern": "a"})
        result = run("rules", "update", rule.id, "--pattern", "(")
        assert result.exit_code != 0
        assert "Invalid regex pattern" in result.output
        assert app.rules.get_rule(rule.id).pattern == "a"

    def test_update_rule_needs_a_change(self, run, app):
        """Calling update with no options is a usage error."""
        rule = app.rules.create_rule({"name": "p", "kind": "add-prefix", "prefix": "> "})
        result = run("rules", "update", rule.id)
        assert result.exit_code == 2
        assert "Nothing to update" in result.output

    def test_update_profile_order(self, run, app):
        """--rule sets a new order; --add-rule and --remove-rule edit the list."""
        a = app.rules.create_rule({"name": "a", "kind": "add-prefix", "prefix": "["})
        b = app.rules.create_rule({"name": "b", "kind": "add-suffix", "suffix": "]"})
        c = app.rules.create_rule({"name": "c", "kind": "add-suffix", "suffix": "!"})
        profile = app.rules.create_profile({"name": "P", "rule_ids": [a.id, b.id]})

        result = run("profiles", "update", profile.id, "--rule", b.id, "--rule", a.id)
        assert result.exit_code == 0, result.output
        assert app.rules.get_profile(profile.id).rule_ids == [b.id, a.id]

        run("profiles", "update", profile.id, "--add-rule", c.id, "--remove-rule", b.id)
        assert app.rules.get_profile(profile.id).rule_ids == [a.id, c.id]

        run("profiles", "update", profile.id, "--name", "Renamed")
        assert app.rules.get_profile(profile.id).name == "Renamed"
        assert app.rules.get_profile(profile.id).rule_ids == [a.id, c.id]

    def test_update_unknown_profile(self, run):
        """Updating an unknown profile fails cleanly."""
        result = run("profiles", "update", "nope", "--name", "x")
        assert result.exit_code != 0
        assert "Profile not found: nope" in result.output


class TestConversationCommands:
    """Test conversations commands."""

    def test_list_empty(self, run):
        """An empty store says so."""
        assert "No saved conversations." in run("conversations", "list").output

    def test_list_rename_delete(self, run, app):
        """Saved conversations can be listed, renamed and deleted."""
        saved = app.save_conversation("Original")

        assert "Original" in run("conversations", "list").output
        assert run("conversations", "rename", saved.id, "Better").exit_code == 0
        assert app.list_conversations()[0].name == "Better"

        result = run("conversations", "delete", saved.id, "--yes")
        assert result.exit_code == 0
        assert app.list_conversations() == []

    def test_rename_unknown(self, run):
        """Renaming an unknown conversation fails cleanly."""
        result = run("conversations", "rename", "conv-0-000000", "x")
        assert result.exit_code != 0
        assert "Conversation not found" in result.output

    def test_compress(self, run, app, sample_conversation):
        """compress prints the summary and rewrites the record."""
        app.store.save_conversation(sample_conversation)

        result = run("conversations", "compress", sample_conversation.id)

        assert result.exit_code == 0, result.output
        assert "Compressed:" in result.output
        assert len(app.store.load_conversation(sample_conversation.id).messages) == 1


class TestModelsCommand:
    """Test the models command."""

    def test_lists_and_marks_current(self, run):
        """The current model is starred."""
        result = run("models")
        assert result.exit_code == 0
        assert "* echo-v1" in result.output

    def test_unreachable_server(self, run, app):
        """A transport failure becomes a clean error."""
        app.llm.list_models = AsyncMock(side_effect=TransportError("Failed to list models: refused"))
        result = run("models")
        assert result.exit_code != 0
        assert "Failed to list models" in result.output

    def test_select_persists(self, run, app):
        """models select switches the client and remembers the choice."""
        result = run("models", "select", "echo-v2")
        assert result.exit_code == 0, result.output
        assert app.llm.model == "echo-v2"
        assert app.settings.get("model") == "echo-v2"
        assert "* echo-v2" in run("models").output

    def test_info(self, run):
        """models info prints the server's details as JSON."""
        result = run("models", "info")
        assert result.exit_code == 0, result.output
        assert '"family": "echo"' in result.output


class TestSettingsCommand:
    """Test the settings command."""

    def test_show_and_change(self, run, app, monkeypatch):
        """Options are persisted; without options the current values are shown."""
        monkeypatch.delenv("CODEMATE_OLLAMA_URL", raising=False)
        result = run("settings", "--url", "http://gpu:11434", "--context-size", "8192")

        assert result.exit_code == 0, result.output
        assert app.settings.get("ollama_url") == "http://gpu:11434"
        assert app.settings.get("context_size") == 8192
        assert "http://gpu:11434" in run("settings").output

    def test_out_of_range_rejected(self, run, app):
        """click validates the ranges before anything is stored."""
        result = run("settings", "--temperature", "5")
        assert result.exit_code == 2
        assert app.settings.get("temperature") is None


class TestBrokenSettings:
    """Test start-up failures."""

    def test_corrupt_settings_file_is_reported(self, tmp_path, monkeypatch):
        """An unreadable settings file gives an error message, not a traceback."""
        settings_path = tmp_path / "settings.json"
        settings_path.write_text("{not json", encoding="utf-8")
        monkeypatch.setattr("codemate.SETTINGS_PATH", settings_path)
        monkeypatch.setattr("codemate.CHATS_DIR", tmp_path / "chats")

        result = CliRunner().invoke(cli, ["rules", "list"])

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Cannot read settings" in result.output


class TestChatCommand:
    """Test the interactive chat loop."""

    def test_chat_and_save(self, run, app):
        """Messages stream back and /save stores the conversation."""
        result = run("chat", input="hello\n/save Greeting\n/quit\n")

        assert result.exit_code == 0, result.output
        assert "Echo: hello" in result.output
        (summary,) = app.list_conversations()
        assert summary.name == "Greeting"
        assert summary.message_count == 2

    def test_clear_and_compress(self, run, app):
        """/compress summarizes and /clear empties the session."""
        result = run("chat", input="hello\n/compress\n/clear\n/quit\n")

        assert result.exit_code == 0, result.output
        assert "Context compressed" in result.output
        assert "Chat cleared." in result.output
        assert app.session.history == []

    def test_unknown_command_and_eof(self, run):
        """Unknown slash commands are reported; end of input leaves the loop."""
        result = run("chat", input="/frobnicate\n")
        assert result.exit_code == 0
        assert "Unknown command: /frobnicate" in result.output

    def test_load_unknown_reports_error(self, run):
        """Errors inside the loop are printed and the loop continues."""
        result = run("chat", input="/load conv-0-000000\nhello\n/quit\n")
        assert result.exit_code == 0
        assert "Conversation not found" in result.output
        assert "Echo: hello" in result.output

    def test_model_option(self, run, app):
        """--model switches the model for this chat only."""
        result = run("chat", "--model", "echo-v9", input="/quit\n")
        assert "echo-v9" in result.output
        assert app.settings.get("model") is None
