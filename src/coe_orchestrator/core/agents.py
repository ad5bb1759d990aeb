"""LLM agent backends and the system prompts the orchestrator sends them."""

import asyncio
import logging
from typing import Protocol

from coe_orchestrator.errors import AgentError

logger = logging.getLogger(__name__)

ANSWER_SYSTEM_PROMPT = (
    "You are an Answer agent in a coding orchestration system. Provide concise, "
    "actionable responses to developer questions. Focus on clarity and practical solutions."
)

PLANNING_SYSTEM_PROMPT = (
    "You are a Planning agent. Break coding tasks into small atomic steps (15-25 min each), "
    "number them, include file names to modify/create, and add 1-sentence success criteria "
    "per step."
)

VERIFICATION_SYSTEM_PROMPT = (
    "You are a Verification agent. Check if the code meets the task success criteria. "
    "Return only: PASS or FAIL, then 1-2 sentence explanation. Be strict."
)

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a routing assistant. Classify the user request into exactly one of: "
    "planning, verification, answer. Reply with only the single word."
)


class AgentBackend(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        history: list[dict] | None = None,
    ) -> str: ...


def render_history(history: list[dict] | None, prompt: str) -> str:
    """Flatten prior turns and the new prompt into one transcript."""
    if not history:
        return prompt
    lines = [f"{turn['role'].capitalize()}: {turn['content']}" for turn in history]
    lines.append(f"User: {prompt}")
    return "\n\n".join(lines)


class ClaudeCliBackend:
    """Runs completions through the ``claude`` CLI in print mode."""

    def __init__(self, model: str = "sonnet", executable: str = "claude"):
        self.model = model
        self.executable = executable

    def build_command(self, prompt: str, system_prompt: str | None = None) -> list[str]:
        cmd = [
            self.executable,
            "-p", prompt,
            "--output-format", "text",
            "--model", self.model,
        ]
        if system_prompt:
            cmd.extend(["--append-system-prompt", system_prompt])
        return cmd

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        history: list[dict] | None = None,
    ) -> str:
        cmd = self.build_command(render_history(history, prompt), system_prompt)
        logger.debug("Running agent command with model %s", self.model)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AgentError(f"Agent executable not found: {self.executable}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:500]
            raise AgentError(f"Agent exited with code {proc.returncode}: {detail}")
        return stdout.decode(errors="replace").strip()
