"""
Honey CLI - inspect a running memory service from the terminal.

Usage:
    python run_cli.py [--url URL] health|stats|sessions
    python run_cli.py recover SESSION_KEY [--session-id ID] [--limit N]
    python run_cli.py capture SESSION_KEY TURN_TYPE CONTENT
    python run_cli.py search QUERY [--session-key KEY] [--limit N]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from honey.client import HoneyClient, RecoveredContext


console = Console()


def _when(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(int(ms) / 1000.0).strftime("%Y-%m-%d %H:%M:%S")


def print_health(data: Dict[str, Any], url: str) -> None:
    status = Text()
    if not data.get("connected"):
        status.append("●", style="bold red")
        status.append(f" Honey unreachable at {url}\n", style="red")
        status.append(str(data.get("error", "")), style="dim")
        console.print(status)
        return
    status.append("●", style="bold green")
    status.append(f" Connected to {url}\n", style="green")
    status.append(f"💾 {data.get('storage', '?')}", style="cyan")
    if not data.get("persistent", True):
        status.append(" (flat file)", style="yellow")
    status.append(" │ ", style="dim")
    status.append(f"📝 {data.get('total_turns', 0)} turns", style="dim")
    status.append(" │ ", style="dim")
    status.append(f"⏱ {float(data.get('uptime', 0)):.0f}s up", style="dim")
    console.print(status)


def print_stats(data: Dict[str, Any]) -> None:
    table = Table(show_header=False, border_style="dim")
    table.add_column("key", style="cyan")
    table.add_column("value")
    for key in ("storage", "persistent", "total_turns", "total_sessions", "total_tokens", "db_path"):
        if key in data:
            table.add_row(key, str(data[key]))
    table.add_row("oldest", _when(data.get("oldest")))
    table.add_row("newest", _when(data.get("newest")))
    console.print(table)


def print_sessions(sessions: List[str]) -> None:
    if not sessions:
        console.print("[dim]No sessions stored yet[/dim]")
        return
    for s in sessions:
        console.print(f"  [cyan]{s}[/cyan]")


def print_recovered(key: str, rc: RecoveredContext) -> None:
    styles = {"ok": "green", "empty": "yellow", "unavailable": "red"}
    style = styles.get(rc.status, "white")
    title = f"{key} · {rc.status} · {len(rc.turns)} turns"
    console.print(Panel(Text(rc.text), title=title, border_style=style))
    if rc.error:
        console.print(f"[red]❌ {rc.error}[/red]")


def print_search(query: str, results: List[Dict[str, Any]]) -> None:
    if not results:
        console.print(f"[dim]No matches for {query!r}[/dim]")
        return
    table = Table(title=f"Search: {query}", border_style="dim")
    table.add_column("when", style="dim")
    table.add_column("session", style="cyan")
    table.add_column("type")
    table.add_column("content")
    for r in results:
        content = str(r.get("content", ""))
        if len(content) > 120:
            content = content[:117] + "..."
        table.add_row(_when(r.get("timestamp")), str(r.get("session_key", "")), str(r.get("turn_type", "")), content)
    console.print(table)


async def run(args: argparse.Namespace) -> int:
    async with HoneyClient(base_url=args.url, timeout_s=args.timeout) as client:
        if args.command == "health":
            data = await client.health()
            print_health(data, client.base_url)
            return 0 if data.get("connected") else 1

        if args.command == "recover":
            rc = await client.recover_for_session(
                args.session_key,
                session_id=args.session_id,
                sessions_file=args.sessions_file,
                limit=args.limit,
            )
            print_recovered(args.session_key, rc)
            return 0 if rc.available else 1

        if args.command == "capture":
            ok = await client.capture(args.session_key, args.turn_type, args.content)
            console.print("[green]✅ Captured[/green]" if ok else "[red]❌ Capture failed[/red]")
            return 0 if ok else 1

        try:
            if args.command == "stats":
                print_stats(await client.stats())
            elif args.command == "sessions":
                print_sessions(await client.sessions())
            elif args.command == "search":
                print_search(args.query, await client.search(args.query, limit=args.limit, session_key=args.session_key))
        except httpx.HTTPStatusError as e:
            console.print(f"[red]❌ Error: {e.response.status_code} {e.response.text}[/red]")
            return 1
        except httpx.HTTPError as e:
            console.print(f"[red]❌ Error: {e}[/red]")
            return 1
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Honey memory service CLI")
    parser.add_argument("--url", default=None, help="Service URL (default: HONEY_URL or http://localhost:7779)")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health", help="Check the service is reachable")
    sub.add_parser("stats", help="Show storage statistics")
    sub.add_parser("sessions", help="List stored session keys")

    p = sub.add_parser("recover", help="Show the context an agent session would recover")
    p.add_argument("session_key", help='Agent session key, e.g. "agent:main:main"')
    p.add_argument("--session-id", default=None, help="Transcript session id, if known")
    p.add_argument("--sessions-file", default=None, help="sessions.json index to look the session id up in")
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("capture", help="Store one turn")
    p.add_argument("session_key")
    p.add_argument("turn_type")
    p.add_argument("content")

    p = sub.add_parser("search", help="Full-text search over stored turns")
    p.add_argument("query")
    p.add_argument("--session-key", default=None)
    p.add_argument("--limit", type=int, default=10)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
