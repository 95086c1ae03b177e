"""Configure command: controller URL, provider and stored credentials."""

from __future__ import annotations

import json
from typing import Optional

import click

from fleetctl.config import clear_token, config_dir, load_config, normalize_url, save_config


def register(cli: click.Group) -> None:
    cli.add_command(configure)


@click.command()
@click.option("--url", default=None, help="Controller address; https and port 8443 are implied.")
@click.option("--provider", default=None, help="Identity provider name.")
@click.option("--insecure/--secure", default=None, help="Skip TLS certificate verification.")
@click.option("--api-version", type=int, default=None, help="Admin API version to negotiate.")
@click.option(
    "--bearer",
    default=None,
    help="Bearer token to store in the system keyring.",
)
@click.option("--expires-at", default=None, help="Token expiry, ISO 8601.")
@click.option("--logout", is_flag=True, default=False, help="Remove the stored token.")
@click.option("--show", is_flag=True, default=False, help="Print the current configuration.")
def configure(
    url: Optional[str],
    provider: Optional[str],
    insecure: Optional[bool],
    api_version: Optional[int],
    bearer: Optional[str],
    expires_at: Optional[str],
    logout: bool,
    show: bool,
) -> None:
    """Configure the controller fleetctl talks to."""
    cfg = load_config()

    if show:
        data = cfg.to_dict()
        data["config_dir"] = str(config_dir())
        data["authenticated"] = cfg.check_auth()
        click.echo(json.dumps(data, indent=2))
        return

    if logout:
        if cfg.url:
            clear_token(cfg.url)
        cfg.bearer_token = ""
        cfg.expires_at = ""
        save_config(cfg)
        click.echo("Logged out.")
        return

    if url is None and not cfg.url:
        url = click.prompt("Controller URL")
    if url is not None:
        try:
            cfg.url = normalize_url(url)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--url")
    if provider is not None:
        cfg.provider = provider
    if insecure is not None:
        cfg.insecure = insecure
    if api_version is not None:
        cfg.api_version = api_version
    if bearer is not None:
        cfg.bearer_token = bearer
    if expires_at is not None:
        cfg.expires_at = expires_at

    save_config(cfg)
    click.echo(click.style(f"Configuration saved for {cfg.url}", fg="green"))
