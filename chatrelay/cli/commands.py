"""CLI commands for chatrelay."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chatrelay.config import ensure_workspace, load_config, save_default_config

app = typer.Typer(
    name="chatrelay",
    help="chatrelay: personal WhatsApp Web relay with an LLM behind it",
)
console = Console()


def configure_logging(verbose: bool = False) -> None:
    """Route loguru to stderr at INFO, or DEBUG with --verbose."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose)


def _build_resolver(config, workspace: Path, session_store, system_events=None, status_text=None):
    from chatrelay.agent.resolver import RelayReplyResolver
    from chatrelay.providers.litellm_provider import LiteLLMProvider
    from chatrelay.session.transcript import TranscriptStore

    provider = LiteLLMProvider(
        api_key=config.get_api_key(),
        api_base=config.get_api_base(),
        default_model=config.agents.defaults.model,
    )
    return RelayReplyResolver(
        provider=provider,
        transcripts=TranscriptStore(workspace / "transcripts"),
        session_store=session_store,
        system_events=system_events,
        status_text=status_text,
    )


@app.command()
def onboard(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
) -> None:
    """Initialize configuration and workspace."""
    path = save_default_config(config_path)
    config = load_config(config_path)
    workspace = ensure_workspace(config)

    console.print(f"[green]Config created at:[/green] {path}")
    console.print(f"[green]Workspace initialized at:[/green] {workspace}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Edit config to add your API key and web.allow_from")
    console.print("2. Start the WhatsApp bridge and run: chatrelay gateway")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
) -> None:
    """Show current status and configuration."""
    config = load_config(config_path)

    table = Table(title="chatrelay Status")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Workspace", str(config.workspace_path))
    table.add_row("Model", config.agents.defaults.model)
    table.add_row("Max Tokens", str(config.agents.defaults.max_tokens))
    table.add_row("Temperature", str(config.agents.defaults.temperature))

    api_key = config.get_api_key()
    table.add_row("API Key", f"...{api_key[-8:]}" if api_key else "[red]Not configured[/red]")
    table.add_row("API Base", config.get_api_base() or "Default")

    table.add_row("WhatsApp Web", "Enabled" if config.web.enabled else "Disabled")
    table.add_row("Bridge URL", config.web.bridge_url)
    table.add_row("Allow From", ", ".join(config.web.allow_from) or "[dim]self only[/dim]")
    table.add_row("Session Scope", config.session.scope)
    heartbeat_minutes = config.agents.defaults.heartbeat_minutes
    table.add_row("Heartbeat", f"every {heartbeat_minutes}m" if heartbeat_minutes else "Disabled")

    table.add_row("Telegram", "Enabled" if config.channels.telegram.enabled else "Disabled")
    table.add_row("Discord", "Enabled" if config.channels.discord.enabled else "Disabled")
    table.add_row("Keybase", "Enabled" if config.channels.keybase.enabled else "Disabled")

    console.print(table)


@app.command()
def gateway(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every inbound message"),
) -> None:
    """Start the gateway (WhatsApp monitor + other channels + heartbeat)."""
    config = load_config(config_path)
    workspace = ensure_workspace(config)

    if not config.get_api_key():
        console.print("[red]Error:[/red] No API key configured.")
        raise typer.Exit(1)

    from chatrelay.bus.queue import SystemEventQueue
    from chatrelay.channels.manager import ChannelManager
    from chatrelay.channels.whatsapp import WhatsAppChannel
    from chatrelay.heartbeat.service import HeartbeatService, heartbeat_tick
    from chatrelay.observability.audit import DeliveryLog
    from chatrelay.session.store import SessionStore

    async def _run_gateway() -> None:
        session_store = SessionStore(config.session_store_path)
        delivery_log = DeliveryLog(config.data_path)
        system_events = SystemEventQueue()
        whatsapp: WhatsAppChannel | None = None

        def status_text() -> str:
            if whatsapp is None or whatsapp.status is None:
                return "web off"
            current = whatsapp.status
            return f"web {'connected' if current.connected else 'disconnected'} ({current.reconnect_attempts} retries)"

        resolver = _build_resolver(config, workspace, session_store, system_events, status_text)
        manager = ChannelManager()

        if config.web.enabled:
            whatsapp = WhatsAppChannel(
                resolver,
                config,
                session_store=session_store,
                delivery_log=delivery_log,
                system_events=system_events,
                verbose=verbose,
            )
            manager.register(whatsapp)
        if config.channels.telegram.enabled:
            from chatrelay.channels.telegram import TelegramChannel

            manager.register(TelegramChannel(resolver, config, session_store=session_store))
        if config.channels.discord.enabled:
            from chatrelay.channels.discord import DiscordChannel

            manager.register(DiscordChannel(resolver, config))
        if config.channels.keybase.enabled:
            from chatrelay.channels.keybase import KeybaseChannel

            manager.register(KeybaseChannel(resolver, config))

        console.print("[bold green]Gateway starting...[/bold green]")
        await manager.start_all()

        heartbeat: HeartbeatService | None = None
        tasks: list[asyncio.Task[None]] = []
        minutes = config.agents.defaults.heartbeat_minutes
        if whatsapp is not None and minutes > 0:
            heartbeat = HeartbeatService(interval_seconds=minutes * 60)
            tick = heartbeat_tick(
                config,
                reply_resolver=resolver,
                sender=whatsapp.send_text,
                session_store=session_store,
                delivery_log=delivery_log,
            )
            tasks.append(asyncio.create_task(heartbeat.run(tick)))

        try:
            if whatsapp is not None and whatsapp.handle is not None:
                await whatsapp.handle.wait()
            else:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        finally:
            if heartbeat is not None:
                heartbeat.stop()
            for task in tasks:
                task.cancel()
            await manager.stop_all()

    try:
        asyncio.run(_run_gateway())
    except KeyboardInterrupt:
        console.print("\n[dim]Gateway stopped.[/dim]")


@app.command()
def heartbeat(
    to: Optional[str] = typer.Option(None, "--to", "-t", help="Recipient number (E.164)"),
    all_recipients: bool = typer.Option(False, "--all", help="Send to every known recipient"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Send this text instead of asking the model"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be sent without sending"),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Force the session id for this run"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
) -> None:
    """Run one WhatsApp heartbeat now."""
    config = load_config(config_path)
    workspace = ensure_workspace(config)

    from chatrelay.heartbeat.service import resolve_heartbeat_recipients, run_web_heartbeat_once
    from chatrelay.observability.audit import DeliveryLog
    from chatrelay.session.store import SessionStore

    session_store = SessionStore(config.session_store_path)
    targets = resolve_heartbeat_recipients(config, session_store, to=to, all_recipients=all_recipients)
    if not targets.recipients:
        console.print("[red]Error:[/red] No heartbeat recipient found. Use --to or set web.allow_from.")
        raise typer.Exit(1)
    if targets.source == "session-ambiguous":
        console.print(
            "[red]Error:[/red] Multiple recent sessions: "
            f"{', '.join(targets.recipients)}. Pass --to <E.164> or --all."
        )
        raise typer.Exit(1)

    if message is None and not config.get_api_key():
        console.print("[red]Error:[/red] No API key configured.")
        raise typer.Exit(1)

    resolver = _build_resolver(config, workspace, session_store) if message is None else None
    delivery_log = DeliveryLog(config.data_path)

    async def _no_resolver(*_args):
        return None

    async def _run() -> int:
        listener = None
        if not dry_run:
            from chatrelay.web.inbound import connect_bridge_listener

            async def _ignore(_msg) -> None:
                return None

            listener = await connect_bridge_listener(config.web, _ignore)

        async def sender(recipient: str, text: str) -> str | None:
            if listener is None:
                raise RuntimeError("No bridge connection for sending")
            return await listener.send_text(recipient, text)

        failures = 0
        try:
            for recipient in targets.recipients:
                try:
                    event = await run_web_heartbeat_once(
                        config,
                        recipient,
                        reply_resolver=resolver or _no_resolver,
                        sender=sender,
                        session_store=session_store,
                        session_id=session_id,
                        override_body=message,
                        dry_run=dry_run,
                        delivery_log=delivery_log,
                    )
                except Exception as e:
                    failures += 1
                    console.print(f"[red]Heartbeat to {recipient} failed:[/red] {escape(str(e))}")
                    continue
                label = event.status if event else "dry-run"
                console.print(f"[green]{recipient}[/green]: {label}")
        finally:
            if listener is not None:
                await listener.close()
        return failures

    failures = asyncio.run(_run())
    if failures:
        raise typer.Exit(1)


@app.command()
def logs(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of entries to show"),
    entry_type: Optional[str] = typer.Option(None, "--type", help="Only show one record type (inbound, delivery, reconnect, heartbeat)"),
    to: Optional[str] = typer.Option(None, "--to", help="Only show records for this address"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
) -> None:
    """Show recent delivery log records."""
    config = load_config(config_path)
    audit_dir = config.data_path / "audit"
    if not audit_dir.exists():
        console.print("[yellow]No logs found.[/yellow]")
        return

    entries = []
    for path in sorted(audit_dir.glob("*.jsonl")):
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry_type and entry.get("type") != entry_type:
                continue
            if to and to not in (entry.get("to"), entry.get("from")):
                continue
            entries.append(entry)

    if not entries:
        console.print("[yellow]No matching logs found.[/yellow]")
        return

    entries.sort(key=lambda e: e.get("timestamp", ""))
    shown = entries[-limit:]
    console.print(f"Found {len(entries)} matching log entries (showing {len(shown)})")
    for entry in shown:
        kind = str(entry.get("type", "?")).upper()
        stamp = entry.get("timestamp", "")
        if kind == "INBOUND":
            detail = f"{entry.get('from')} ➔ {entry.get('to')}: {entry.get('body') or ''}"
        elif kind == "DELIVERY":
            media = f" [{entry.get('media_kind')}]" if entry.get("media_kind") else ""
            detail = f"➔ {entry.get('to')}{media} {entry.get('chars', 0)} chars in {entry.get('duration_ms')}ms"
        elif kind == "RECONNECT":
            detail = f"status {entry.get('status')} attempt {entry.get('reconnect_attempts')} ({entry.get('outcome')})"
        elif kind == "HEARTBEAT":
            detail = f"{entry.get('to')}: {entry.get('status')}"
        else:
            detail = json.dumps(entry, ensure_ascii=False)
        console.print(f"[dim]{stamp}[/dim] [bold]{kind}[/bold] {escape(detail)}")


if __name__ == "__main__":
    app()
