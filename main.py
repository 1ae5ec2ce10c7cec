"""
Completion Router - Main Entry Point

CLI for inspecting and exercising the completion router: probe
providers, send prompts, validate a single provider, switch models,
and review usage accounting.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from completion_router.config.loader import SettingsStore, load_router_config
from completion_router.exceptions import RouterError
from completion_router.llm.models import CompletionRequest
from completion_router.llm.router import CompletionRouter
from completion_router.observability.logging_config import configure_logging

# Load environment (override=True to ensure .env values take precedence)
root_env = Path(__file__).parent / ".env"
if root_env.exists():
    load_dotenv(root_env, override=True)
else:
    load_dotenv(override=True)

app = typer.Typer(
    name="completion-router",
    help="Completion Router - multi-backend completion routing",
)
console = Console()

configure_logging(level=logging.WARNING)
logger = logging.getLogger("completion_router.cli")

CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Router YAML config (default: COMPLETION_ROUTER_CONFIG)"
)


def _get_router(config: Optional[str]) -> CompletionRouter:
    """Build a router, with a friendly error when the config is broken."""
    try:
        return CompletionRouter(SettingsStore.from_file(config))
    except (FileNotFoundError, ValueError, RouterError) as e:
        console.print(Panel(
            f"[red]Could not load router config:[/]\n\n{e}",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


def _print_providers(router: CompletionRouter) -> None:
    table = Table(title="Completion Providers")
    table.add_column("Key", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Model", style="green")
    table.add_column("Available")
    table.add_column("Latency", style="yellow", justify="right")
    table.add_column("Tok/s", style="yellow", justify="right")
    table.add_column("Credential", style="dim")

    for key, stats in router.get_provider_stats().items():
        tps = stats["avg_tokens_per_second"]
        table.add_row(
            key,
            stats["name"],
            stats["model"],
            "[green]yes[/]" if stats["is_available"] else "[red]no[/]",
            f"{stats['avg_latency_ms']:.0f} ms",
            f"{tps:.1f}" if tps is not None else "-",
            "set" if stats["has_credential"] else "missing",
        )
    console.print(table)


# =========================================================================
# Commands
# =========================================================================


@app.command()
def validate(config: Optional[str] = CONFIG_OPTION):
    """Validate the router configuration without contacting providers."""
    try:
        cfg = load_router_config(config)
    except Exception as e:
        console.print(f"[red]Validation failed:[/] {e}")
        raise typer.Exit(1)

    priorities = sorted(cfg.router.providers.items(), key=lambda kv: kv[1].priority)
    order = ", ".join(k for k, v in priorities if v.enabled) or "registry order"
    console.print(Panel(
        f"[green]Configuration valid![/]\n\n"
        f"Providers: {len(cfg.providers)}\n"
        f"Priority order: {order}\n"
        f"Cache: {cfg.cache.max_entries} entries, TTL {cfg.cache.ttl_seconds:.0f}s\n"
        f"Request timeout: {cfg.timeouts.request_seconds:.0f}s\n"
        f"Usage DB: {cfg.usage_db_path or 'in-memory'}",
        title="Router Config",
    ))


@app.command()
def providers(config: Optional[str] = CONFIG_OPTION):
    """Probe every provider and show availability and latency."""

    async def _run():
        router = _get_router(config)
        async with router:
            _print_providers(router)

    asyncio.run(_run())


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    user: str = typer.Option("cli", help="User id used for caching/accounting"),
    tool: str = typer.Option("chat", help="Logical feature name"),
    max_tokens: int = typer.Option(1000, help="Completion token limit"),
    temperature: float = typer.Option(0.7, help="Sampling temperature"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Route a prompt through the provider priority order."""

    async def _run():
        router = _get_router(config)
        async with router:
            try:
                response = await router.generate_response(CompletionRequest(
                    prompt=prompt,
                    user_id=user,
                    tool_tag=tool,
                    max_tokens=max_tokens,
                    temperature=temperature,
                ))
            except RouterError as e:
                console.print(f"[red]Request failed:[/] {e}")
                raise typer.Exit(1)

        usage = response.usage
        console.print(Panel(
            response.content,
            title=f"{response.provider_key} / {response.model_id}",
            subtitle=(
                f"{usage.total_tokens} tokens{' (estimated)' if usage.estimated else ''}"
                if usage else None
            ),
        ))

    asyncio.run(_run())


@app.command(name="test")
def test_provider(
    provider: str = typer.Argument(..., help="Provider key"),
    prompt: str = typer.Option("Hello, this is a test message.", help="Test prompt"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Send a cache-bypassing test request to one provider."""

    async def _run():
        router = _get_router(config)
        async with router:
            try:
                response = await router.test_provider(provider, CompletionRequest(
                    prompt=prompt, user_id="admin-test", max_tokens=50,
                ))
            except RouterError as e:
                console.print(f"[red]Test failed:[/] {e}")
                raise typer.Exit(1)
            _print_providers(router)
        console.print(Panel(response.content, title=f"Test: {provider}", border_style="green"))

    asyncio.run(_run())


@app.command()
def models(
    provider: str = typer.Argument(..., help="Provider key"),
    config: Optional[str] = CONFIG_OPTION,
):
    """List the models a provider currently offers."""

    async def _run():
        router = _get_router(config)
        async with router:
            try:
                names = await router.list_provider_models(provider)
            except Exception as e:
                console.print(f"[red]Could not list models:[/] {e}")
                raise typer.Exit(1)
        for name in names:
            console.print(f"  [cyan]{name}[/]")

    asyncio.run(_run())


@app.command(name="set-model")
def set_model(
    provider: str = typer.Argument(..., help="Provider key"),
    model: str = typer.Argument(..., help="Model id"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Switch a provider's model and persist it to the config file."""

    async def _run():
        router = _get_router(config)
        async with router:
            ok = await router.update_provider_model(provider, model)
        if not ok:
            console.print(f"[red]Failed to update {provider} to {model}[/]")
            raise typer.Exit(1)
        console.print(f"[green]{provider} model updated to:[/] {model}")

    asyncio.run(_run())


@app.command(name="set-key")
def set_key(
    provider: str = typer.Argument(..., help="Provider key"),
    api_key: Optional[str] = typer.Argument(None, help="API key to store"),
    clear: bool = typer.Option(False, "--clear", help="Remove the stored key"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Store a provider's API key in the config file and re-probe."""
    if not clear and not api_key:
        console.print("[red]Pass an API key, or --clear to remove the stored one[/]")
        raise typer.Exit(1)

    async def _run():
        router = _get_router(config)
        async with router:
            ok = await router.update_provider_credential(provider, None if clear else api_key)
            if not ok:
                console.print(f"[red]Failed to update the API key for {provider}[/]")
                raise typer.Exit(1)
            _print_providers(router)
        console.print(f"[green]API key for {provider} {'cleared' if clear else 'updated'}[/]")

    asyncio.run(_run())


@app.command(name="set-endpoint")
def set_endpoint(
    provider: str = typer.Argument(..., help="Provider key"),
    endpoint: str = typer.Argument(..., help="Base URL, e.g. http://gpu-box:11434"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Point a provider at another server and re-probe."""

    async def _run():
        router = _get_router(config)
        async with router:
            ok = await router.update_provider_endpoint(provider, endpoint)
            if not ok:
                console.print(f"[red]Failed to set {provider} endpoint to {endpoint}[/]")
                raise typer.Exit(1)
            _print_providers(router)
        console.print(f"[green]{provider} endpoint set to:[/] {endpoint}")

    asyncio.run(_run())


@app.command()
def usage(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Show cumulative token and cost accounting per provider."""

    async def _run():
        router = _get_router(config)
        stats = await router.get_usage_stats()

        if as_json:
            console.print_json(json.dumps(stats))
            return

        table = Table(title="Usage Summary")
        table.add_column("Provider", style="cyan")
        table.add_column("Requests", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", style="yellow", justify="right")
        for row in stats["providers"]:
            table.add_row(
                row["provider_key"],
                str(row["request_count"]),
                f"{row['total_tokens']:,}",
                f"${row['total_cost']:.4f}",
            )
        console.print(table)
        console.print(
            f"Total: {stats['total_requests']} requests, "
            f"{stats['total_tokens']:,} tokens, ${stats['total_cost']:.4f}"
        )

    asyncio.run(_run())


@app.command(name="reset-usage")
def reset_usage(
    provider: str = typer.Argument(..., help="Provider key"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Zero a provider's usage summary (the ledger is kept)."""

    async def _run():
        router = _get_router(config)
        await router.reset_usage(provider)
        console.print(f"[green]Usage statistics for {provider} have been reset[/]")

    asyncio.run(_run())


if __name__ == "__main__":
    app()
