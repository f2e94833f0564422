"""Command line interface for the registration portal."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import requests
import typer

from .config import AppConfig, ConfigurationError, load_config
from .models import RegistrationStatus
from .registration import PortalError, RegistrationService
from .storage import RegistrationStore

app = typer.Typer(help="Manage extension registrations and their Active Directory accounts.")

_REQUEST_TIMEOUT = 15


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _build_service(config: AppConfig) -> RegistrationService:
    return RegistrationService(RegistrationStore(config.storage.registrations_file), config.ldap)


ConfigOption = typer.Option(None, "--config", help="Path to a specific settings file (overrides default).")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind."),
    port: int = typer.Option(5000, help="Port to listen on."),
    debug: bool = typer.Option(False, "--debug", help="Enable the Flask debugger."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run the admin portal with the Flask development server."""

    from .web import create_app

    logging.basicConfig(
        level=os.environ.get("PORTAL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        web_app = create_app(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    web_app.run(host=host, port=port, debug=debug)


@app.command("users")
def list_users(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by 'pending' or 'registered'."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Print registration records as JSON."""

    service = _build_service(_load_configuration(config_path))
    if status:
        try:
            records = service.list_users_by_status(RegistrationStatus.parse(status))
        except ValueError as exc:
            raise typer.BadParameter(str(exc))
    else:
        records = service.list_users()
    typer.echo(json.dumps([record.to_dict() for record in records], indent=2))


@app.command("groups")
def list_groups(config_path: Optional[Path] = ConfigOption) -> None:
    """List the directory groups that can be assigned."""

    service = _build_service(_load_configuration(config_path))
    groups = service.list_available_groups()
    if not groups:
        typer.echo("No groups found.")
        raise typer.Exit(code=0)
    for group in groups:
        typer.echo(f"- {group.name}")
        typer.echo(f"    dn: {group.distinguished_name}")
        if group.description:
            typer.echo(f"    description: {group.description}")


@app.command("register")
def register_email(
    email: str = typer.Argument(..., help="Google account email to submit."),
    url: str = typer.Option("http://127.0.0.1:5000", "--url", help="Base URL of the portal."),
) -> None:
    """Submit an email to the registration endpoint, as the browser extension does."""

    endpoint = f"{url.rstrip('/')}/api/extension/register"
    try:
        response = requests.post(endpoint, json={"email": email}, timeout=_REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    try:
        payload = response.json()
    except ValueError:
        payload = {}

    if not response.ok:
        typer.echo(f"Registration failed: {payload.get('error') or response.reason}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(payload, indent=2))


@app.command("provision")
def provision(
    user_principal_name: str = typer.Argument(..., help="userPrincipalName of the new account."),
    display_name: str = typer.Argument(..., help="Display name (also used as the CN)."),
    email: str = typer.Argument(..., help="Mail attribute for the account."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create an enabled Active Directory account in the users OU."""

    service = _build_service(_load_configuration(config_path))
    try:
        account = service.provision_directory_user(user_principal_name, display_name, email)
    except PortalError as exc:
        typer.echo(f"Error: {exc.message}")
        raise typer.Exit(code=1)
    typer.echo(f"Created {account.distinguished_name}")


@app.command("reset-password")
def reset_password(
    record_id: int = typer.Argument(..., help="Registration record id."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reset the password of a registered user's account and print it once."""

    service = _build_service(_load_configuration(config_path))
    try:
        password = service.reset_user_password(record_id)
    except PortalError as exc:
        typer.echo(f"Error: {exc.message}")
        raise typer.Exit(code=1)
    typer.echo(password)


def run():
    app()


if __name__ == "__main__":
    run()
