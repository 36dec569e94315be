"""Admin commands for the chat user registry.

The login service owns identities; this registers their ids in the chat
database so their tokens are accepted by the API.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import typer

from chat.core.memory import SqliteConversationStore
from config.settings import get_settings


logger = logging.getLogger("chatapp.cli")

cli = typer.Typer(
    name="chat-admin",
    help="Manage users known to the Gemini chat backend",
    add_completion=False,
)


def _open_store(database: Optional[str]) -> SqliteConversationStore:
    return SqliteConversationStore(database or get_settings().database_path)


@cli.command("register-user")
def register_user(
    user_ids: List[str] = typer.Argument(..., help="User ids issued by the login service"),
    database: Optional[str] = typer.Option(
        None, "--database", "-d", help="SQLite path (defaults to DATABASE_PATH)"
    ),
):
    """Register user ids so their session tokens are accepted."""
    store = _open_store(database)
    try:
        for user_id in user_ids:
            user_id = user_id.strip()
            if not user_id:
                typer.echo("Skipping blank user id", err=True)
                continue
            store.create_user(user_id)
            logger.info("Registered user=%s", user_id)
            typer.echo(f"Registered {user_id}")
    finally:
        store.close()


@cli.command("check-user")
def check_user(
    user_id: str = typer.Argument(..., help="User id to look up"),
    database: Optional[str] = typer.Option(
        None, "--database", "-d", help="SQLite path (defaults to DATABASE_PATH)"
    ),
):
    """Exit with status 1 if the user is not registered."""
    store = _open_store(database)
    try:
        known = store.has_user(user_id)
    finally:
        store.close()
    if not known:
        typer.echo(f"{user_id} is not registered", err=True)
        raise typer.Exit(1)
    typer.echo(f"{user_id} is registered")


if __name__ == "__main__":
    cli()
