"""Protocol methods exposed to the coding client."""

from __future__ import annotations

import logging
from typing import Any

from coe_orchestrator.app import AppContext
from coe_orchestrator.core.diagnostics import load_diagnostics
from coe_orchestrator.core.orchestrator import REPORT_STATUSES
from coe_orchestrator.db.models import Task
from coe_orchestrator.errors import InvalidParamsError
from coe_orchestrator.mcp.server import ProtocolServer

logger = logging.getLogger(__name__)

TASK_FILTERS = ("ready", "blocked", "all")
AGENT_COMMANDS = ("plan", "verify", "ask")


# ── Param helpers ────────────────────────────────────────────────────────────


def _object(params: Any, required: bool = False) -> dict:
    if params is None and not required:
        return {}
    if not isinstance(params, dict):
        raise InvalidParamsError("params must be an object")
    return params


def _str(params: dict, key: str, required: bool = False) -> str | None:
    value = params.get(key)
    if value is None:
        if required:
            raise InvalidParamsError(f"{key} is required and must be a string")
        return None
    if not isinstance(value, str) or (required and not value.strip()):
        raise InvalidParamsError(f"{key} must be a non-empty string")
    return value


def _bool(params: dict, key: str, default: bool) -> bool:
    value = params.get(key, default)
    if not isinstance(value, bool):
        raise InvalidParamsError(f"{key} must be a boolean")
    return value


def _str_list(params: dict, key: str) -> list[str] | None:
    value = params.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidParamsError(f"{key} must be a list of strings")
    return value


def _task_to_dict(task: Task, app: AppContext, include_context: bool) -> dict:
    data = {
        "id": task.id,
        "ticketId": task.ticket_id,
        "title": task.title,
        "status": task.status.value,
        "createdAt": task.created_at.isoformat() if task.created_at else None,
    }
    if not include_context:
        return data

    ticket = app.store.get(task.ticket_id)
    data.update({
        "priority": task.priority,
        "dependsOn": task.depends_on,
        "lastPickedAt": task.last_picked_at.isoformat() if task.last_picked_at else None,
        "estimatedMinutes": task.estimated_minutes,
    })
    if ticket:
        data["description"] = ticket.description
        data["thread"] = [{"role": m.role, "content": m.content} for m in ticket.thread]
    return data


def _next_task_result(app: AppContext, task: Task | None, include_context: bool) -> dict:
    return {
        "task": _task_to_dict(task, app, include_context) if task else None,
        "queueStatus": app.orchestrator.queue_status(),
    }


# ── Registry ─────────────────────────────────────────────────────────────────


def build_server(app: AppContext) -> ProtocolServer:
    server = ProtocolServer()
    orchestrator = app.orchestrator

    @server.method("getNextTask")
    async def get_next_task(params):
        """Dequeue the next task. Result carries the task (or null) and the queue status."""
        params = _object(params)
        task_filter = _str(params, "filter") or "ready"
        if task_filter not in TASK_FILTERS:
            raise InvalidParamsError(
                f"Invalid filter '{task_filter}'. Valid options: {', '.join(TASK_FILTERS)}"
            )
        include_context = _bool(params, "includeContext", True)

        task = await orchestrator.get_next_task(task_filter)
        return await orchestrator.offload(_next_task_result, app, task, include_context)

    @server.method("reportTaskDone")
    async def report_task_done(params):
        params = _object(params, required=True)
        task_id = _str(params, "taskId") or _str(params, "ticketId")
        if not task_id:
            raise InvalidParamsError("taskId is required and must be a string")
        status = _str(params, "status", required=True)
        if status not in REPORT_STATUSES:
            raise InvalidParamsError(f"status must be one of: {', '.join(REPORT_STATUSES)}")

        report = await orchestrator.report_task_done(
            task_id,
            status,
            notes=_str(params, "notes") or _str(params, "summary"),
            code_diff=_str(params, "codeDiff"),
            task_description=_str(params, "taskDescription"),
            failed_criteria=_str_list(params, "failedCriteria"),
            failed_tests=_str_list(params, "failedTests"),
        )
        result = {
            "success": report.success,
            "taskId": report.task_id,
            "status": report.status,
            "message": report.message,
        }
        if report.verification:
            result["verification"] = {
                "passed": report.verification.passed,
                "explanation": report.verification.explanation,
            }
        if report.escalation_ticket_id:
            result["escalationTicketId"] = report.escalation_ticket_id
        return result

    @server.method("askQuestion")
    async def ask_question(params):
        params = _object(params, required=True)
        question = _str(params, "question", required=True)
        answer, chat_id = await orchestrator.ask_question(
            question,
            chat_id=_str(params, "chatId"),
            timeout_seconds=app.config.answer_timeout_seconds,
        )
        return {"answer": answer, "chatId": chat_id}

    @server.method("getErrors")
    async def get_errors(params):
        params = _object(params)
        return load_diagnostics(app.config.diagnostics_path, _str(params, "filePattern"))

    @server.method("callCOEAgent")
    async def call_coe_agent(params):
        params = _object(params, required=True)
        command = params.get("command")
        if command not in AGENT_COMMANDS:
            raise InvalidParamsError(
                f"Unknown COE command: {command}. Valid commands: {', '.join(AGENT_COMMANDS)}"
            )
        args = params.get("args")
        if not isinstance(args, dict):
            raise InvalidParamsError("Missing or invalid args object")

        logger.info("COE agent called: command=%s", command)
        match command:
            case "plan":
                return await orchestrator.route_to_planning_agent(
                    _str(args, "task", required=True)
                )
            case "verify":
                code = _str(args, "code", required=True)
                result = await orchestrator.route_to_verification_agent(
                    _str(args, "task") or "Verification", code
                )
                return result.summary()
            case "ask":
                return await orchestrator.route_to_answer_agent(
                    _str(args, "question", required=True)
                )

    return server
