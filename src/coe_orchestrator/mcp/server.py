"""Line-oriented JSON-RPC server over asyncio streams."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from coe_orchestrator.errors import (
    AnswerTimeoutError,
    InvalidParamsError,
    OrchestratorNotInitializedError,
)
from coe_orchestrator.mcp.jsonrpc import (
    ANSWER_TIMEOUT,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    Request,
    error_response,
    parse_message,
    success_response,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

MAX_LINE_BYTES = 16 * 1024 * 1024


class ProtocolServer:
    """Dispatches JSON-RPC requests to a fixed registry of handlers.

    Every inbound line is handled in its own task, so a slow handler never
    holds up the channel. Each handler validates its own params and raises
    InvalidParamsError when they are wrong.
    """

    def __init__(self, name: str = "coe-orchestrator"):
        self.name = name
        self._handlers: dict[str, Handler] = {}

    def method(self, name: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self.register(name, handler)
            return handler
        return decorator

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            raise ValueError(f"Method already registered: {name}")
        self._handlers[name] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, request: Request) -> dict | None:
        """Run one request. Returns None for notifications."""
        logger.info("Received request: method=%s id=%r", request.method, request.id)
        handler = self._handlers.get(request.method)
        if handler is None:
            response = error_response(
                request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )
        else:
            response = await self._invoke(handler, request)

        if request.is_notification:
            return None
        return response

    async def _invoke(self, handler: Handler, request: Request) -> dict:
        try:
            result = await handler(request.params)
        except InvalidParamsError as e:
            return error_response(request.id, INVALID_PARAMS, f"Invalid params: {e}")
        except AnswerTimeoutError as e:
            return error_response(
                request.id,
                ANSWER_TIMEOUT,
                str(e),
                {"code": "ANSWER_TIMEOUT", "ticketId": e.ticket_id},
            )
        except OrchestratorNotInitializedError as e:
            return error_response(
                request.id, INTERNAL_ERROR, str(e), {"code": "ORCHESTRATOR_NOT_INITIALIZED"}
            )
        except Exception as e:
            logger.exception("Handler for %s failed", request.method)
            return error_response(request.id, INTERNAL_ERROR, f"Internal error: {e}")
        return success_response(request.id, result)

    async def handle_line(self, line: str | bytes) -> list[dict]:
        """Parse and dispatch one line; returns the responses to write, in order."""
        parsed = parse_message(line)
        responses = list(parsed.errors)
        results = await asyncio.gather(*(self.dispatch(r) for r in parsed.requests))
        responses.extend(r for r in results if r is not None)
        return responses

    async def serve(self, reader: asyncio.StreamReader, writer) -> None:
        """Read lines until EOF, answering each as soon as it completes.

        A line longer than the reader's limit is skipped and answered with
        a parse error; the lines after it are served normally.
        """
        pending: set[asyncio.Task] = set()
        while True:
            line = await _read_line(reader)
            if line is None:
                logger.warning("Skipped a line over the read limit")
                await self._write(
                    writer, [error_response(None, PARSE_ERROR, "Parse error: line too long")]
                )
                continue
            if not line:
                break
            if not line.strip():
                continue
            task = asyncio.create_task(self._answer(line, writer))
            pending.add(task)
            task.add_done_callback(pending.discard)
        if pending:
            await asyncio.gather(*pending)

    async def _answer(self, line: bytes, writer) -> None:
        try:
            responses = await self.handle_line(line)
        except Exception as e:
            logger.exception("Failed to handle line")
            responses = [error_response(None, INTERNAL_ERROR, f"Internal error: {e}")]
        await self._write(writer, responses)

    async def _write(self, writer, responses: list[dict]) -> None:
        for response in responses:
            writer.write((json.dumps(response) + "\n").encode())
            if "error" in response:
                logger.warning(
                    "Sent error: id=%r code=%s message=%s",
                    response["id"], response["error"]["code"], response["error"]["message"],
                )
        await writer.drain()

    async def serve_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        logger.info("%s listening on stdio (methods: %s)", self.name, ", ".join(self.methods))
        await self.serve(reader, StdoutWriter())


async def _read_line(reader: asyncio.StreamReader) -> bytes | None:
    """Next line, b"" at EOF, or None for a line over the reader's limit.

    An overlong line is consumed up to and including its newline.
    """
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError as e:
        consumed = e.consumed

    while True:
        await reader.readexactly(consumed)
        try:
            await reader.readuntil(b"\n")
            return None
        except asyncio.IncompleteReadError:
            return None
        except asyncio.LimitOverrunError as e:
            consumed = e.consumed


class StdoutWriter:
    """Minimal stream writer over the process's stdout."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout.buffer

    def write(self, data: bytes) -> None:
        self.stream.write(data)

    async def drain(self) -> None:
        self.stream.flush()
