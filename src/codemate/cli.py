"""CLI interface for codemate."""

import asyncio
import json
import logging
import signal
from contextlib import contextmanager
from typing import Optional, Tuple

import click

from . import CodeMate, __version__
from .config import MAX_CONTEXT_SIZE, ClientConfig
from .errors import CodeMateError, NotFoundError, TransportError
from .events import Events
from .llm import Echo
from .models import ADD_PREFIX, ADD_SUFFIX, ASSISTANT_ROLE, PATTERN_REPLACE, RULE_KINDS


class TerminalEvents(Events):
    """Renders session events as plain terminal output."""

    def message_added(self, message_id, role, content):
        if role == ASSISTANT_ROLE:
            click.echo(click.style("codemate> ", fg="green"), nl=False)
        elif role != "user":
            click.echo(click.style(content, dim=True))

    def message_updated(self, message_id, content, append):
        if append:
            click.echo(content, nl=False)
        else:
            click.echo()
            click.echo(click.style(content, fg="cyan"))

    def turn_complete(self, stats):
        click.echo()
        detail = f"{stats.outcome.value}, {stats.duration_ms} ms"
        if stats.token_count is not None:
            detail += f", {stats.token_count} chunks"
        click.echo(click.style(f"({detail})", dim=True))

    def context_info_changed(self, token_count, message_count):
        pass

    def chat_cleared(self):
        click.echo(click.style("Chat cleared.", dim=True))


def _make_app(echo: bool = False, events: Optional[Events] = None) -> CodeMate:
    if echo:
        return CodeMate(llm=Echo(), events=events)
    return CodeMate(events=events)


@contextmanager
def _reported():
    try:
        yield
    except CodeMateError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="codemate")
@click.option("--verbose", "-v", is_flag=True, help="Log requests and responses.")
def cli(verbose: bool):
    """codemate: chat with a local Ollama model from the terminal.

    Responses can be rewritten by post-processing rules, grouped into
    profiles; conversations can be saved, compressed and resumed.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# --- chat ---
def _run(loop: asyncio.AbstractEventLoop, app: CodeMate, coro):
    """Runs ``coro`` on ``loop`` with Ctrl-C mapped to stopping the session."""
    try:
        loop.add_signal_handler(signal.SIGINT, app.session.stop)
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this loop or thread; Ctrl-C interrupts instead.
        pass
    try:
        return loop.run_until_complete(coro)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _slash_command(loop, app: CodeMate, line: str) -> bool:
    """Handles one slash command. Returns False when the loop should end."""
    command, _, arg = line.partition(" ")
    arg = arg.strip()
    if command == "/quit":
        return False
    if command == "/clear":
        app.new_chat()
    elif command == "/compress":
        summary = _run(loop, app, app.session.compress())
        if summary is None:
            click.echo("Nothing was compressed.")
    elif command == "/save":
        conversation = app.save_conversation(arg)
        click.echo(f"Saved {conversation.name!r} as {conversation.id}")
    elif command == "/load":
        conversation = app.load_conversation(arg)
        click.echo(f"Loaded {conversation.name!r} ({len(conversation.messages)} messages)")
    else:
        click.echo(f"Unknown command: {command}. Try /clear, /compress, /save NAME, /load ID or /quit.")
    return True


@cli.command()
@click.option("--model", help="Model to chat with; defaults to the configured one.")
@click.option("--echo", is_flag=True, help="Use the offline echo server instead of Ollama.")
def chat(model: Optional[str], echo: bool):
    """Start an interactive chat. Ctrl-C stops the response being generated."""
    with _reported():
        app = _make_app(echo=echo, events=TerminalEvents())
    if model:
        app.llm.update_config(model=model)
    click.echo(click.style(f"Chatting with {app.llm.model}. /quit to leave.", bold=True))

    loop = asyncio.new_event_loop()
    try:
        while True:
            try:
                line = click.prompt("you", prompt_suffix="> ").strip()
            except click.Abort:
                click.echo()
                break
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not _slash_command(loop, app, line):
                        break
                else:
                    _run(loop, app, app.session.submit(line))
            except TransportError as e:
                click.echo(click.style(str(e), fg="red"), err=True)
            except CodeMateError as e:
                click.echo(click.style(f"Error: {e}", fg="red"), err=True)
    finally:
        loop.close()


# --- rules ---
@cli.group()
def rules():
    """Manage post-processing rules."""
    pass


@rules.command("list")
def rules_list():
    """List every rule."""
    with _reported():
        app = _make_app()
    items = app.rules.list_rules()
    if not items:
        click.echo("No rules defined.")
        return
    for rule in items:
        state = "on " if rule.enabled else "off"
        click.echo(f"{rule.id}  [{state}] {rule.kind:<15} {rule.name}")
        if rule.kind == PATTERN_REPLACE:
            click.echo(f"    {rule.pattern!r} -> {rule.replacement!r}")
        elif rule.kind == ADD_PREFIX:
            click.echo(f"    prefix {rule.prefix!r}")
        elif rule.kind == ADD_SUFFIX:
            click.echo(f"    suffix {rule.suffix!r}")


@rules.command("add")
@click.argument("name")
@click.option("--kind", type=click.Choice(RULE_KINDS), required=True)
@click.option("--pattern", help="Regular expression (pattern-replace).")
@click.option("--replacement", default="", help="Replacement template (pattern-replace).")
@click.option("--prefix", help="Text to prepend (add-prefix).")
@click.option("--suffix", help="Text to append (add-suffix).")
@click.option("--description")
@click.option("--disabled", is_flag=True, help="Create the rule switched off.")
def rules_add(name, kind, pattern, replacement, prefix, suffix, description, disabled):
    """Create a rule.

    Example:
        codemate rules add "No emphasis" --kind pattern-replace --pattern '\\*\\*(.+?)\\*\\*' --replacement '\\1'
    """
    data = {"name": name, "kind": kind, "description": description, "enabled": not disabled}
    if kind == PATTERN_REPLACE:
        data.update(pattern=pattern, replacement=replacement)
    elif kind == ADD_PREFIX:
        data["prefix"] = prefix
    elif kind == ADD_SUFFIX:
        data["suffix"] = suffix

    with _reported():
        app = _make_app()
        rule = app.rules.create_rule(data)
    click.echo(f"Created rule {rule.id}")


@rules.command("update")
@click.argument("rule_id")
@click.option("--name")
@click.option("--kind", type=click.Choice(RULE_KINDS), help="Switch the rule to another kind.")
@click.option("--pattern")
@click.option("--replacement")
@click.option("--prefix")
@click.option("--suffix")
@click.option("--description")
@click.option("--enable/--disable", "enabled", default=None, help="Switch the rule on or off.")
def rules_update(rule_id, **options):
    """Change some fields of a rule; options left out keep their value."""
    changes = {k: v for k, v in options.items() if v is not None}
    if not changes:
        raise click.UsageError("Nothing to update.")
    with _reported():
        app = _make_app()
        rule = app.rules.update_rule(rule_id, changes)
    click.echo(f"Updated rule {rule.id} ({'on' if rule.enabled else 'off'})")


@rules.command("remove")
@click.argument("rule_id")
def rules_remove(rule_id):
    """Delete a rule and drop it from every profile."""
    with _reported():
        app = _make_app()
        app.rules.delete_rule(rule_id)
    click.echo(f"Deleted rule {rule_id}")


# --- profiles ---
@cli.group()
def profiles():
    """Manage post-processing profiles."""
    pass


@profiles.command("list")
def profiles_list():
    """List every profile; the active one is starred."""
    with _reported():
        app = _make_app()
    active = app.rules.get_active_profile()
    items = app.rules.list_profiles()
    if not items:
        click.echo("No profiles defined.")
        return
    for profile in items:
        marker = "*" if active is not None and profile.id == active.id else " "
        click.echo(f"{marker} {profile.id}  {profile.name} ({len(profile.rule_ids)} rules)")
        if profile.rule_ids:
            click.echo(f"    {' -> '.join(profile.rule_ids)}")


@profiles.command("add")
@click.argument("name")
@click.option("--rule", "rule_ids", multiple=True, help="Rule id; repeat to add more, in order.")
@click.option("--description")
def profiles_add(name: str, rule_ids: Tuple[str, ...], description: Optional[str]):
    """Create a profile from an ordered list of rules."""
    with _reported():
        app = _make_app()
        profile = app.rules.create_profile(
            {"name": name, "description": description, "rule_ids": list(rule_ids)}
        )
    click.echo(f"Created profile {profile.id}")


@profiles.command("update")
@click.argument("profile_id")
@click.option("--name")
@click.option("--description")
@click.option(
    "--rule", "rule_ids", multiple=True, help="Replace the rule list; repeat in the new order."
)
@click.option("--add-rule", "added", multiple=True, help="Append a rule to the end.")
@click.option("--remove-rule", "removed", multiple=True, help="Drop every use of a rule.")
def profiles_update(
    profile_id: str,
    name: Optional[str],
    description: Optional[str],
    rule_ids: Tuple[str, ...],
    added: Tuple[str, ...],
    removed: Tuple[str, ...],
):
    """Rename a profile or change which rules it runs, and in what order."""
    with _reported():
        app = _make_app()
        current = app.rules.get_profile(profile_id)
        if current is None:
            raise NotFoundError(f"Profile not found: {profile_id}")

        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if rule_ids or added or removed:
            ordered = list(rule_ids) if rule_ids else list(current.rule_ids)
            ordered.extend(added)
            changes["rule_ids"] = [r for r in ordered if r not in removed]
        if not changes:
            raise click.UsageError("Nothing to update.")
        profile = app.rules.update_profile(profile_id, changes)
    click.echo(f"Updated profile {profile.id} ({len(profile.rule_ids)} rules)")


@profiles.command("remove")
@click.argument("profile_id")
def profiles_remove(profile_id):
    """Delete a profile."""
    with _reported():
        app = _make_app()
        app.rules.delete_profile(profile_id)
    click.echo(f"Deleted profile {profile_id}")


@profiles.command("activate")
@click.argument("profile_id", required=False)
def profiles_activate(profile_id: Optional[str]):
    """Make a profile active; with no id, switch post-processing off."""
    with _reported():
        app = _make_app()
        app.rules.set_active_profile(profile_id)
    if profile_id:
        click.echo(f"Active profile: {profile_id}")
    else:
        click.echo("Post-processing disabled.")


# --- conversations ---
@cli.group()
def conversations():
    """Manage saved conversations."""
    pass


@conversations.command("list")
def conversations_list():
    """List saved conversations, most recent first."""
    with _reported():
        app = _make_app()
        items = app.list_conversations()
    if not items:
        click.echo("No saved conversations.")
        return
    for summary in items:
        click.echo(
            f"{summary.id}  {click.style(summary.name, bold=True)}  "
            f"{summary.message_count} messages, {summary.context_size} context tokens, "
            f"updated {summary.updated_at:%Y-%m-%d %H:%M}"
        )
        click.echo(f"    {summary.preview}")


@conversations.command("delete")
@click.argument("conversation_id")
@click.confirmation_option(prompt="Delete this conversation?")
def conversations_delete(conversation_id):
    """Delete a saved conversation."""
    with _reported():
        app = _make_app()
        deleted = app.delete_conversation(conversation_id)
    if deleted:
        click.echo(f"Deleted {conversation_id}")
    else:
        click.echo(f"No conversation {conversation_id}")


@conversations.command("rename")
@click.argument("conversation_id")
@click.argument("name")
def conversations_rename(conversation_id, name):
    """Rename a saved conversation."""
    with _reported():
        app = _make_app()
        app.rename_conversation(conversation_id, name)
    click.echo(f"Renamed {conversation_id} to {name!r}")


@conversations.command("compress")
@click.argument("conversation_id")
@click.option("--echo", is_flag=True, help="Use the offline echo server instead of Ollama.")
def conversations_compress(conversation_id, echo):
    """Replace a saved conversation's history with a short summary."""
    with _reported():
        app = _make_app(echo=echo)
        summary = asyncio.run(app.compress_conversation(conversation_id))
    if summary is None:
        click.echo("Nothing to compress.")
    else:
        click.echo(click.style("Compressed:", bold=True))
        click.echo(summary)


# --- models and settings ---
@cli.group(invoke_without_command=True)
@click.pass_context
def models(ctx):
    """List the models installed on the Ollama server."""
    if ctx.invoked_subcommand is not None:
        return
    with _reported():
        app = _make_app()
        names = asyncio.run(app.list_models())
    for name in names:
        marker = "*" if name == app.llm.model else " "
        click.echo(f"{marker} {name}")


@models.command("select")
@click.argument("name")
def models_select(name):
    """Make NAME the model for every following chat."""
    with _reported():
        app = _make_app()
        app.select_model(name)
    click.echo(f"Model set to {name}")


@models.command("info")
@click.argument("name", required=False)
def models_info(name):
    """Show the server's details for a model (default: the current one)."""
    with _reported():
        app = _make_app()
        info = asyncio.run(app.model_info(name))
    click.echo(json.dumps(info, indent=2, default=str))


@cli.command()
@click.option("--url", help="Ollama server address.")
@click.option("--temperature", type=click.FloatRange(0, 2))
@click.option("--context-size", type=click.IntRange(1, MAX_CONTEXT_SIZE))
def settings(url, temperature, context_size):
    """Show the client settings, or change them with the options."""
    changes = {
        key: value
        for key, value in (
            ("ollama_url", url),
            ("temperature", temperature),
            ("context_size", context_size),
        )
        if value is not None
    }
    with _reported():
        app = _make_app()
        if changes:
            app.update_settings(changes)
        config = ClientConfig.from_settings(app.settings)
    click.echo(f"url:          {config.url}")
    click.echo(f"model:        {app.llm.model}")
    click.echo(f"temperature:  {config.temperature}")
    click.echo(f"context size: {config.context_size}")
