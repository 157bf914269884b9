from datetime import datetime, timedelta
from typing import Optional, Tuple

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import APIKey, IntegrationConnection, User
from .security import ROLE_ADMIN, hash_password
from .services.integrations import SyncOptions
from .services.integrations.sync import IntegrationSyncService
from .services.integrations.utils import parse_date
from .version import __version__


@click.command("db_init")
@with_appcontext
def db_init_command() -> None:
    """Initialize the database tables."""
    db.create_all()
    click.echo("Database initialized.")


@click.command("create-admin")
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--name", default="Administrator", show_default=True)
@with_appcontext
def create_admin_command(email: str, password: str, name: str) -> None:
    """Create an administrator account."""
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise click.ClickException("User already exists.")

    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=ROLE_ADMIN,
    )
    db.session.add(user)
    db.session.commit()
    click.echo(f"Admin user {email} created.")


@click.command("create-api-key")
@click.option("--email", required=True, help="Email of the key owner.")
@click.option("--name", required=True, help="Human-readable key name.")
@click.option(
    "--expires-days", type=int, default=None, help="Days until the key expires."
)
@with_appcontext
def create_api_key_command(email: str, name: str, expires_days: Optional[int]) -> None:
    """Issue an API key; the full key is printed once."""
    user = User.query.filter_by(email=email.strip().lower()).first()
    if user is None:
        raise click.ClickException(f"User {email} not found.")

    full_key, key_hash, key_prefix = APIKey.generate_key()
    expires_at = None
    if expires_days and expires_days > 0:
        expires_at = datetime.utcnow() + timedelta(days=expires_days)
    db.session.add(
        APIKey(
            user_id=user.id,
            name=name,
            key_hash=key_hash,
            key_prefix=key_prefix,
            expires_at=expires_at,
        )
    )
    db.session.commit()
    click.echo(full_key)


@click.command("sync-integrations")
@click.option(
    "--connection-id", type=int, default=None, help="Sync only this connection."
)
@click.option(
    "--start-date", default=None, help="Only fetch items since this date (YYYY-MM-DD)."
)
@click.option("--skip-work-items", is_flag=True, help="Do not sync work items.")
@click.option("--skip-commits", is_flag=True, help="Do not sync commits.")
@click.option(
    "--project-id",
    "project_ids",
    multiple=True,
    help="Restrict to a project/space id or name (repeatable).",
)
@with_appcontext
def sync_integrations_command(
    connection_id: Optional[int],
    start_date: Optional[str],
    skip_work_items: bool,
    skip_commits: bool,
    project_ids: Tuple[str, ...],
) -> None:
    """Pull work items, commits and pages for active connections."""
    try:
        since = parse_date(start_date) if start_date else None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--start-date") from exc

    options = SyncOptions(
        sync_work_items=not skip_work_items,
        sync_commits=not skip_commits,
        start_date=since,
        project_ids=list(project_ids) or None,
    )

    query = IntegrationConnection.query.order_by(IntegrationConnection.id)
    if connection_id is not None:
        query = query.filter(IntegrationConnection.id == connection_id)
    else:
        query = query.filter(
            IntegrationConnection.is_active.is_(True),
            IntegrationConnection.sync_enabled.is_(True),
        )
    connections = query.all()
    if not connections:
        click.echo("No integration connections matched the filters.")
        return

    service = IntegrationSyncService()
    failed = 0
    for connection in connections:
        result = service.sync_connection(connection.id, options)
        summary = (
            f"[{connection.platform}] {connection.name} - {result.status}: "
            f"{result.work_items_synced} work item(s), "
            f"{result.commits_synced} commit(s)"
        )
        if result.pages_synced is not None:
            summary += f", {result.pages_synced} page(s)"
        click.echo(summary)
        for error in result.errors:
            click.echo(f"  ! {error}", err=True)
        if not result.success:
            failed += 1

    if failed:
        raise click.ClickException(
            f"{failed} of {len(connections)} connection(s) reported errors."
        )
    click.echo("Integration synchronization completed.")


@click.command("version")
def version_command() -> None:
    """Print the HRMS version."""
    click.echo(__version__)


def register_cli_commands(app) -> None:
    app.cli.add_command(db_init_command)
    app.cli.add_command(create_admin_command)
    app.cli.add_command(create_api_key_command)
    app.cli.add_command(sync_integrations_command)
    app.cli.add_command(version_command)
