"""Read-only JSON status API over the ticket store."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from coe_orchestrator.config import get_config
from coe_orchestrator.core.orchestrator import queue_snapshot
from coe_orchestrator.core.tickets import TicketStore, ticket_to_dict
from coe_orchestrator.db.engine import get_db
from coe_orchestrator.db.models import TicketStatus


def _get_db():
    config = get_config()
    return get_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_tickets(request: Request):
    status_filter = request.query_params.get("status")
    if status_filter and status_filter not in {s.value for s in TicketStatus}:
        return JSONResponse({"error": f"Invalid status: {status_filter}"}, status_code=400)
    with _get_db() as db:
        tickets = TicketStore(db).list_tickets(status=status_filter)
        return JSONResponse([ticket_to_dict(t) for t in tickets])


async def api_get_ticket(request: Request):
    ticket_id = request.path_params["ticket_id"]
    with _get_db() as db:
        ticket = TicketStore(db).get(ticket_id)
        if not ticket:
            return JSONResponse({"error": "Ticket not found"}, status_code=404)
        return JSONResponse(ticket_to_dict(ticket))


async def api_queue(request: Request):
    with _get_db() as db:
        return JSONResponse(queue_snapshot(TicketStore(db)))


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tickets", api_list_tickets),
        Route("/api/tickets/{ticket_id}", api_get_ticket),
        Route("/api/queue", api_queue),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
