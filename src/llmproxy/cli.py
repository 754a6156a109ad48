"""Typer CLI for managing model aliases and running their proxies."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .errors import LlmProxyError
from .logging_utils import configure_logging
from .proxy.config import ProxyConfig
from .proxy.config_loader import list_env_overrides, load_file_config
from .service import AliasProxyService

app = typer.Typer(help="Per-alias reverse proxies for OpenAI-compatible backends")
console = Console()


def _service() -> AliasProxyService:
    return AliasProxyService.from_config(ProxyConfig.load())


def _fail(exc: Exception) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(1)


@app.command("list")
def cmd_list(
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a table"),
):
    """List registered aliases."""
    try:
        models = _service().get_models()
    except LlmProxyError as exc:
        _fail(exc)
    if as_json:
        typer.echo(json.dumps([m.to_dict() for m in models], indent=2))
        return
    if not models:
        console.print("[yellow]No models registered[/yellow]")
        return
    table = Table(title="Model Aliases")
    table.add_column("ID", style="white dim")
    table.add_column("Alias", style="cyan")
    table.add_column("Real model", style="magenta")
    table.add_column("URL", style="green", overflow="fold")
    table.add_column("Default", style="yellow")
    for m in models:
        table.add_row(m.id, m.alias, m.real_model, m.url, "✓" if m.default else "")
    console.print(table)


@app.command("add")
def cmd_add(
    alias: str,
    url: str,
    real_model: str,
    default: bool = typer.Option(False, "--default", help="Mark as default model"),
):
    try:
        model_id = _service().add_model(alias, url, real_model, is_default=default)
    except LlmProxyError as exc:
        _fail(exc)
    typer.echo(json.dumps({"id": model_id, "alias": alias.strip()}, indent=2))


@app.command("update")
def cmd_update(
    model_id: str,
    alias: Optional[str] = typer.Option(None, "--alias"),
    url: Optional[str] = typer.Option(None, "--url"),
    real_model: Optional[str] = typer.Option(None, "--real-model"),
    default: Optional[bool] = typer.Option(
        None, "--default/--no-default", help="Set or clear the default flag"
    ),
):
    """Update fields of a model; omitted fields keep their current value."""
    service = _service()
    try:
        current = service.registry.get(model_id)
        if current is None:
            _fail(LlmProxyError(f"Model with ID {model_id} not found"))
        updated = service.update_model(
            model_id,
            alias if alias is not None else current.alias,
            url if url is not None else current.url,
            real_model if real_model is not None else current.real_model,
            is_default=default,
        )
    except LlmProxyError as exc:
        _fail(exc)
    typer.echo(json.dumps(updated.to_dict(), indent=2))


@app.command("remove")
def cmd_remove(model_id: str):
    try:
        _service().remove_model(model_id)
    except LlmProxyError as exc:
        _fail(exc)
    typer.echo(f"Removed {model_id}")


@app.command("serve")
def cmd_serve(
    aliases: Optional[List[str]] = typer.Argument(
        None, help="Aliases to start (default: the default model)"
    ),
    exit_after: float = typer.Option(
        0.0, "--exit-after", help="Stop after N seconds (0 = run until interrupted)"
    ),
):
    """Start proxies and block until interrupted."""
    cfg = ProxyConfig.load()
    configure_logging(cfg)
    service = AliasProxyService.from_config(cfg)
    stop_event = threading.Event()
    with service:
        try:
            if aliases:
                endpoints = {alias: service.start_proxy(alias) for alias in aliases}
            else:
                endpoint = service.start_default()
                default = service.registry.get_default()
                endpoints = {default.alias: endpoint} if endpoint and default else {}
        except LlmProxyError as exc:
            _fail(exc)
        if not endpoints:
            _fail(LlmProxyError("No aliases given and no default model to start"))
        for alias, endpoint in endpoints.items():
            typer.echo(f"{alias}: {endpoint.url} (port {endpoint.port})")
        try:
            stop_event.wait(exit_after if exit_after > 0 else None)
        except KeyboardInterrupt:
            typer.echo("Shutting down")


@app.command("config")
def cmd_config():
    """Show runtime config, file config and active env overrides."""
    cfg = ProxyConfig.load()
    typer.echo(
        json.dumps(
            {
                "runtime": asdict(cfg),
                "file": load_file_config(),
                "env_overrides": list_env_overrides(),
            },
            indent=2,
        )
    )


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
