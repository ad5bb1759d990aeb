"""CLI entry point for the COE orchestrator."""

import asyncio
import json
import logging
import sys

import click

from coe_orchestrator.config import get_config
from coe_orchestrator.core.orchestrator import queue_snapshot
from coe_orchestrator.core.tickets import TicketStore, ticket_to_dict
from coe_orchestrator.db.engine import get_db
from coe_orchestrator.db.models import TicketStatus, TicketType, priority_from_level
from coe_orchestrator.errors import CoeError

STATUS_ICONS = {
    "open": "○",
    "in-progress": "●",
    "pending": "◌",
    "done": "✓",
    "blocked": "✗",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _configure_logging(level: str):
    # stdout carries the protocol channel, so logs go to stderr
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """coe - COE orchestrator CLI"""
    pass


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--auto/--manual", "auto", default=None, help="Auto-route human-facing tickets (default from COE_AUTO_MODE)")
@click.option("--tick-interval", default=5.0, type=float, help="Seconds between stall scans")
def serve(auto, tick_interval):
    """Run the JSON-RPC server on stdin/stdout."""
    config = get_config()
    if auto is not None:
        config.auto_mode = auto
    _configure_logging(config.log_level)
    asyncio.run(_serve(config, tick_interval))


async def _serve(config, tick_interval: float):
    from coe_orchestrator.app import app_context
    from coe_orchestrator.mcp.tools import build_server

    with app_context(config) as app:
        server = build_server(app)
        upkeep = asyncio.create_task(app.orchestrator.run(tick_interval))
        try:
            await server.serve_stdio()
        finally:
            upkeep.cancel()


@main.command("web")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def web_command(host, port):
    """Serve the read-only status API."""
    from coe_orchestrator.web.app import run_server

    _configure_logging(get_config().log_level)
    click.echo(f"Starting status API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── Ticket Commands ───────────────────────────────────────────────────────────


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Ticket description")
@click.option("--priority", "-p", default="P2", type=click.Choice(["P0", "P1", "P2", "P3"]), help="Priority level")
@click.option("--type", "ticket_type", default="unset", type=click.Choice([t.value for t in TicketType]), help="Conversation type")
@click.option("--status", default="open", type=click.Choice([s.value for s in TicketStatus]), help="Initial status")
def ticket_add(title, description, priority, ticket_type, status):
    """Create a new ticket."""
    with _get_db() as db:
        ticket = TicketStore(db).create(
            title,
            description=description,
            priority=priority_from_level(priority),
            type=ticket_type,
            status=status,
        )
        click.echo(f"Created ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Priority: {ticket.priority}")
        click.echo(f"  Status: {ticket.status.value}")


@ticket_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in TicketStatus]), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ticket_list(status, json_output):
    """List tickets, oldest first."""
    with _get_db() as db:
        tickets = TicketStore(db).list_tickets(status=status)

        if json_output:
            click.echo(json.dumps([ticket_to_dict(t) for t in tickets], indent=2))
            return

        if not tickets:
            click.echo("No tickets found.")
            return

        for ticket in tickets:
            icon = STATUS_ICONS.get(ticket.status.value, "?")
            deps = f" [depends: {', '.join(ticket.depends_on)}]" if ticket.depends_on else ""
            click.echo(f"  {icon} P{ticket.priority} {ticket.id}: {ticket.title} ({ticket.status.value}){deps}")


@ticket_group.command("show")
@click.argument("ticket_id")
def ticket_show(ticket_id):
    """Show ticket details."""
    with _get_db() as db:
        ticket = TicketStore(db).get(ticket_id)
        if not ticket:
            click.echo(f"Ticket not found: {ticket_id}", err=True)
            sys.exit(1)

        click.echo(f"Ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Status: {ticket.status.value}")
        click.echo(f"  Type: {ticket.type.value}")
        click.echo(f"  Priority: {ticket.priority}")
        click.echo(f"  Version: {ticket.version}")
        if ticket.assignee:
            click.echo(f"  Assignee: {ticket.assignee}")
        if ticket.description:
            click.echo(f"  Description: {ticket.description}")
        if ticket.depends_on:
            click.echo(f"  Depends on: {', '.join(ticket.depends_on)}")
        if ticket.resolution:
            click.echo(f"  Resolution: {ticket.resolution}")
        if ticket.thread:
            click.echo("  Thread:")
            for m in ticket.thread:
                click.echo(f"    [{m.role}] {m.content}")


@ticket_group.command("add-dep")
@click.argument("ticket_id")
@click.argument("depends_on_id")
def ticket_add_dep(ticket_id, depends_on_id):
    """Make a ticket depend on another."""
    with _get_db() as db:
        try:
            TicketStore(db).add_dependency(ticket_id, depends_on_id)
        except CoeError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {ticket_id} now depends on {depends_on_id}")


@ticket_group.command("remove-dep")
@click.argument("ticket_id")
@click.argument("depends_on_id")
def ticket_remove_dep(ticket_id, depends_on_id):
    """Remove a dependency between two tickets."""
    with _get_db() as db:
        if not TicketStore(db).remove_dependency(ticket_id, depends_on_id):
            click.echo(f"No such dependency: {ticket_id} -> {depends_on_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {ticket_id} no longer depends on {depends_on_id}")


# ── Queue Commands ────────────────────────────────────────────────────────────


@main.command("queue")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def queue_command(json_output):
    """Summarize the work queue."""
    with _get_db() as db:
        snapshot = queue_snapshot(TicketStore(db))

    if json_output:
        click.echo(json.dumps(snapshot, indent=2))
        return

    click.echo(f"Open: {snapshot['open_count']}")
    click.echo(f"In progress: {snapshot['in_progress_count']}")
    click.echo(f"Pending approval: {snapshot['pending_count']}")
    click.echo(f"Blocked P1: {snapshot['blocked_p1_count']}")
    if snapshot["next_title"]:
        click.echo(f"Next up: {snapshot['next_title']}")


if __name__ == "__main__":
    main()
