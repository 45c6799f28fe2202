"""Typer CLI for guestpass."""

from __future__ import annotations

import csv
import io
import json
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .admin import (
    admin_cancel_registration,
    admin_edit_registration,
    list_registrations,
    registration_detail,
)
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .errors import NotFoundError, ValidationError
from .models import REGISTRATION_STATUSES, STATUS_CANCELLED, STATUS_CONFIRMED
from .repositories import DEFAULT_PAGE_SIZE, SqlRegistrationStore, SqlTokenStore
from .retention import run_retention_cycle
from .seed import seed_fake_data
from .storage import init_db, upgrade_database
from .utils import install_access_log_redaction, utcnow

CSV_COLUMNS = [
    "name",
    "email",
    "stay",
    "adults_count",
    "children_count",
    "notes",
    "status",
    "created_at",
]

# Spreadsheet apps evaluate cells starting with these as formulas.
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

app = typer.Typer(help="guestpass command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("purge")
def purge(
    older_than_days: int | None = typer.Option(
        None,
        "--older-than-days",
        min=0,
        help="Delete cancelled registrations last updated more than this many days ago "
        "(default: cancelled_retention_days)",
    ),
) -> None:
    """Delete expired revoked tokens and long-cancelled registrations."""
    init_db()
    older_than = None
    if older_than_days is not None:
        older_than = utcnow() - timedelta(days=older_than_days)
    try:
        stats = run_retention_cycle(older_than=older_than)
    except OperationalError as exc:
        _exit_if_readonly(exc, "purge")
        raise
    typer.echo(
        f"Purge complete: {stats['registrations_purged']} cancelled registrations, "
        f"{stats['tokens_purged']} tokens removed."
    )


@app.command("stats")
def stats() -> None:
    """Print registration counts by status."""
    init_db()
    with get_session() as session:
        counts = SqlRegistrationStore(session).count_by_status()
    total = sum(counts.values())
    typer.echo(f"Total: {total}")
    typer.echo(f"Confirmed: {counts.get(STATUS_CONFIRMED, 0)}")
    typer.echo(f"Cancelled: {counts.get(STATUS_CANCELLED, 0)}")


def _print_registration_row(registration) -> None:
    typer.echo(
        f"{registration.id}  {registration.status:<9}  "
        f"{registration.created_at:%Y-%m-%d %H:%M}  "
        f"{registration.name} <{registration.email}>  "
        f"{registration.stay} adults={registration.adults_count} "
        f"children={registration.children_count}"
    )


def _exit_not_found(exc: NotFoundError) -> None:
    typer.secho(exc.message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("list")
def list_command(
    status: str | None = typer.Option(
        None, "--status", help="Only show CONFIRMED or CANCELLED registrations"
    ),
    search: str | None = typer.Option(
        None,
        "--search",
        "--email",
        help="Case-insensitive match against name or email",
    ),
    page: int = typer.Option(1, "--page", min=1, help="Page number"),
    page_size: int = typer.Option(
        DEFAULT_PAGE_SIZE, "--page-size", min=1, max=500, help="Rows per page"
    ),
) -> None:
    """List registrations, newest first."""
    if status is not None:
        status = status.strip().upper()
        if status not in REGISTRATION_STATUSES:
            raise typer.BadParameter(
                f"expected one of {', '.join(sorted(REGISTRATION_STATUSES))}",
                param_hint="--status",
            )
    init_db()
    with get_session() as session:
        result = list_registrations(
            SqlRegistrationStore(session),
            status=status,
            search=search,
            page=page,
            page_size=page_size,
        )
        for registration in result.items:
            _print_registration_row(registration)
    typer.echo(
        f"Page {result.page} of {result.pages} ({result.total} registrations)"
    )


@app.command("show")
def show(
    registration_id: str = typer.Argument(..., help="Registration id"),
) -> None:
    """Show one registration and whether it has a live manage link."""
    init_db()
    try:
        with get_session() as session:
            detail = registration_detail(
                SqlRegistrationStore(session),
                SqlTokenStore(session),
                registration_id,
                now=utcnow(),
            )
    except NotFoundError as exc:
        _exit_not_found(exc)

    registration = detail.registration
    typer.echo(f"Id: {registration.id}")
    typer.echo(f"Status: {registration.status}")
    typer.echo(f"Name: {registration.name}")
    typer.echo(f"Email: {registration.email}")
    typer.echo(f"Stay: {registration.stay}")
    typer.echo(f"Adults: {registration.adults_count}")
    typer.echo(f"Children: {registration.children_count}")
    typer.echo(f"Notes: {registration.notes or ''}")
    typer.echo(f"Created: {registration.created_at.isoformat()}")
    typer.echo(f"Updated: {registration.updated_at.isoformat()}")
    if detail.active_token is None:
        typer.echo("No active manage link")
    else:
        typer.echo(
            "Manage link active until "
            f"{detail.active_token.expires_at.isoformat()}"
        )


@app.command("edit")
def edit(
    registration_id: str = typer.Argument(..., help="Registration id"),
    name: str | None = typer.Option(None, "--name", help="Guest name"),
    email: str | None = typer.Option(None, "--email", help="Guest email"),
    stay: str | None = typer.Option(
        None, "--stay", help="FRI_SAT, SAT_SUN or FRI_SUN"
    ),
    adults: int | None = typer.Option(None, "--adults", help="Adults attending"),
    children: int | None = typer.Option(
        None, "--children", help="Children attending"
    ),
    notes: str | None = typer.Option(
        None, "--notes", help="Notes (pass an empty string to clear)"
    ),
) -> None:
    """Edit a confirmed registration. Unspecified fields keep their values."""
    changes = {
        "name": name,
        "email": email,
        "stay": stay,
        "adults_count": adults,
        "children_count": children,
        "notes": notes,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    if not changes:
        typer.echo("Nothing to change.")
        raise typer.Exit()

    init_db()
    try:
        with get_session() as session:
            store = SqlRegistrationStore(session)
            current = store.find_by_id(registration_id)
            data = {}
            if current is not None:
                data = {
                    "name": current.name,
                    "email": current.email,
                    "stay": current.stay,
                    "adults_count": current.adults_count,
                    "children_count": current.children_count,
                    "notes": current.notes,
                }
            data.update(changes)
            registration = admin_edit_registration(store, registration_id, data)
    except NotFoundError as exc:
        _exit_not_found(exc)
    except ValidationError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        for field, message in exc.fields.items():
            typer.secho(f"- {field}: {message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Updated registration {registration.id}")


@app.command("cancel")
def cancel(
    registration_id: str = typer.Argument(..., help="Registration id"),
) -> None:
    """Cancel a registration and revoke its manage links."""
    init_db()
    try:
        with get_session() as session:
            revoked = admin_cancel_registration(
                SqlRegistrationStore(session), SqlTokenStore(session), registration_id
            )
    except NotFoundError as exc:
        _exit_not_found(exc)
    typer.echo(
        f"Cancelled registration {registration_id}; {revoked} manage links revoked."
    )


def _csv_cell(value: str) -> str:
    if value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def registrations_csv(registrations) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for registration in registrations:
        row = []
        for column in CSV_COLUMNS:
            value = getattr(registration, column)
            if value is None:
                row.append("")
            elif column == "created_at":
                row.append(value.isoformat())
            elif isinstance(value, str):
                row.append(_csv_cell(value))
            else:
                row.append(value)
        writer.writerow(row)
    return buffer.getvalue()


@app.command("export-csv")
def export_csv(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write to this file instead of stdout"
    ),
) -> None:
    """Export all registrations as CSV."""
    init_db()
    with get_session() as session:
        content = registrations_csv(SqlRegistrationStore(session).list_all())
    if output is None:
        typer.echo(content, nl=False)
        return
    output.write_text(content, encoding="utf-8")
    typer.echo(f"Wrote {output}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI application."""
    init_db()
    install_access_log_redaction()
    config = uvicorn.Config(
        "guestpass.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting guestpass on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    count: int = typer.Option(20, "--count", min=0, help="Registrations to create"),
    cancelled_percent: int = typer.Option(
        15,
        "--cancelled-percent",
        min=0,
        max=100,
        help="Percentage of registrations created as cancelled (0-100)",
    ),
):
    """Populate the database with fake registrations for local testing."""
    result = seed_fake_data(count=count, cancelled_percentage=cancelled_percent)
    typer.echo(
        f"Seed complete: {result['registrations']} registrations "
        f"({result['cancelled']} cancelled)."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    base_url: str | None = typer.Option(
        None, "--base-url", help="Public URL used to build manage links"
    ),
    token_ttl_days: int | None = typer.Option(
        None, "--token-ttl-days", min=1, help="Days before a manage link expires"
    ),
    cancelled_retention_days: int | None = typer.Option(
        None,
        "--cancelled-retention-days",
        min=0,
        help="Days to keep cancelled registrations before purging",
    ),
    resend_min_response_ms: int | None = typer.Option(
        None,
        "--resend-min-response-ms",
        min=0,
        help="Minimum response time for resend-link requests",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background retention scheduler",
    ),
    purge_interval_hours: int | None = typer.Option(
        None, "--purge-interval-hours", min=1, help="Hours between scheduled purges"
    ),
    email_backend: str | None = typer.Option(
        None, "--email-backend", help="Email backend: log, outbox or resend"
    ),
    email_from: str | None = typer.Option(None, "--email-from", help="Sender address"),
    event_name: str | None = typer.Option(None, "--event-name", help="Event name"),
    event_date: str | None = typer.Option(None, "--event-date", help="Event date text"),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to guestpass.toml (default: ./guestpass.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "base_url": base_url,
        "token_ttl_days": token_ttl_days,
        "cancelled_retention_days": cancelled_retention_days,
        "resend_min_response_ms": resend_min_response_ms,
        "enable_scheduler": enable_scheduler,
        "purge_interval_hours": purge_interval_hours,
        "email_backend": email_backend,
        "email_from": email_from,
        "event_name": event_name,
        "event_date": event_date,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
