"""Operator commands, registered on ``app.cli``.

Every command is also available inside ``console``, an interactive loop for
operators who keep a shell open next to the server.
"""

import logging
import shlex
import sqlite3
from typing import Optional

import click
from flask import Flask, current_app
from flask.cli import with_appcontext

from .cleanup import discard_file, retire_user, start_cleanup, sweep_expired
from .context import get_context
from .errors import ShareError
from .keys import parse_duration
from .migrate import bootstrap
from .storage import (
    create_user,
    db_now,
    get_files_by_owner,
    get_user,
    isoformat_utc,
    list_users,
)

logger = logging.getLogger("sharehost.cli")

EXIT_COMMANDS = {"exit", "quit"}


def _fail(action: str, subject: str, error: Exception) -> click.ClickException:
    logger.error("cli_failed action=%s subject=%s error=%s", action, subject, error)
    return click.ClickException(f"Failed to {action} {subject}: {error}")


@click.command("genkey")
@click.argument("user")
@click.argument("ttl", required=False)
@click.argument("key", required=False)
@with_appcontext
def genkey_command(user: str, ttl: Optional[str], key: Optional[str]) -> None:
    """Create USER with a new access key, optionally expiring after TTL (e.g. 1d12h)."""

    hours = parse_duration(ttl) if ttl else 0.0
    context = get_context()
    try:
        with context.db.transaction() as conn:
            expires_at = db_now(conn) + hours * 3600 if hours > 0 else None
            created = create_user(conn, user, key, expires_at)
    except ShareError as error:
        raise _fail("create user", user, error) from error

    click.echo(f"Generated key: {created.api_key}")
    if created.expires_at is not None:
        click.echo(f"Expires at: {isoformat_utc(created.expires_at)}")


@click.command("getkey")
@click.argument("user")
@with_appcontext
def getkey_command(user: str) -> None:
    """Show the access key of USER."""

    with get_context().db.connect() as conn:
        found = get_user(conn, user)
    if found is None:
        raise click.ClickException(f"User not found: {user}")
    click.echo(f"Showing key for user {found.name}: {found.api_key}")


@click.command("listusers")
@with_appcontext
def listusers_command() -> None:
    """List all users."""

    with get_context().db.connect() as conn:
        users = list_users(conn)
    click.echo("Listing users...")
    for user in users:
        expiry = isoformat_utc(user.expires_at) if user.expires_at is not None else "never"
        click.echo(f"#{user.id}: {user.name} (expires: {expiry})")


@click.command("delfiles")
@click.argument("user")
@with_appcontext
def delfiles_command(user: str) -> None:
    """Delete every file owned by USER, blobs included."""

    context = get_context()
    with context.db.connect() as conn:
        found = get_user(conn, user)
        if found is None:
            raise click.ClickException(f"User not found: {user}")
        files = get_files_by_owner(conn, found.id)

    deleted = 0
    for record in files:
        try:
            if discard_file(context, record):
                deleted += 1
        except sqlite3.Error as error:
            raise _fail("delete file", record.key, error) from error
    logger.warning("cli_files_deleted user=%s count=%d", user, deleted)
    click.echo(f"Deleted {deleted} file(s) of user {user}")


@click.command("deluser")
@click.argument("user")
@with_appcontext
def deluser_command(user: str) -> None:
    """Delete USER; their remaining files are handed to the anonymous account."""

    context = get_context()
    try:
        with context.db.transaction() as conn:
            found = get_user(conn, user)
            if found is None:
                raise click.ClickException(f"User not found: {user}")
            reassigned = retire_user(conn, found)
    except ShareError as error:
        raise _fail("delete user", user, error) from error

    logger.warning("cli_user_deleted user=%s reassigned=%d", user, reassigned)
    click.echo(f"Successfully deleted user {user}")
    if reassigned:
        click.echo(f"{reassigned} file(s) now belong to the anonymous account")


@click.command("migrate")
@with_appcontext
def migrate_command() -> None:
    """Import the legacy keys file and flat uploads into the database."""

    report = bootstrap(get_context())
    click.echo(
        f"Migrated {report.users_migrated} user(s) and {report.files_migrated} file(s)"
        f" with {report.failures} failure(s)"
    )


@click.command("cleanup")
@with_appcontext
def cleanup_command() -> None:
    """Run one expiry sweep now."""

    report = sweep_expired(get_context())
    click.echo(
        f"Removed {report.files_removed} file(s) and {report.users_removed} user(s)"
    )


@click.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=None, help="Defaults to PORT.")
@with_appcontext
def serve_command(host: str, port: Optional[int]) -> None:
    """Start the sweeper and serve HTTP with the Werkzeug server."""

    context = get_context()
    start_cleanup(context)
    current_app.run(host=host, port=port or context.settings.port, debug=False)


CONSOLE_COMMANDS = {
    "genkey": genkey_command,
    "getkey": getkey_command,
    "listusers": listusers_command,
    "delfiles": delfiles_command,
    "deluser": deluser_command,
    "migrate": migrate_command,
    "cleanup": cleanup_command,
}


def run_console_line(line: str) -> bool:
    """Execute one console line. Returns False when the loop should stop."""

    try:
        parts = shlex.split(line)
    except ValueError as error:
        click.echo(f"Error: {error}", err=True)
        return True
    if not parts:
        return True

    name, args = parts[0].lower(), parts[1:]
    if name in EXIT_COMMANDS:
        click.echo("Shutting down...")
        return False

    command = CONSOLE_COMMANDS.get(name)
    if command is None:
        click.echo(f"Unknown command: {name}", err=True)
        return True

    try:
        command.main(args=args, prog_name=name, standalone_mode=False)
    except click.ClickException as error:
        click.echo(f"Error: {error.format_message()}", err=True)
    except (ShareError, sqlite3.Error, OSError) as error:
        logger.exception("console_command_failed command=%s", name)
        click.echo(f"Error: {name} failed: {error}", err=True)
    return True


@click.command("console")
@with_appcontext
def console_command() -> None:
    """Interactive loop accepting the other commands plus ``exit``."""

    click.echo(f"Commands: {', '.join(sorted(CONSOLE_COMMANDS))}, exit")
    while True:
        try:
            line = input("> ")
        except EOFError:
            break
        if not run_console_line(line):
            break


def register_cli(app: Flask) -> None:
    for command in (*CONSOLE_COMMANDS.values(), serve_command, console_command):
        app.cli.add_command(command)
