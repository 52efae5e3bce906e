"""
Collaborators around the external reasoning agent.

The scheduler treats the reasoning agent as an opaque, possibly slow,
possibly failing call ``(role, prompt) -> AgentResult``. It never looks
inside the prompt or the output; role agents do.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anthropic

from crewlease.models.work_item import WorkItem
from crewlease.utils.config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: str
    error: str | None = None


class ReasoningAgent(Protocol):
    async def execute(self, role: str, prompt: str) -> AgentResult: ...


class ContextRetriever(Protocol):
    async def retrieve(self, item: WorkItem) -> str: ...


class NullContextRetriever:
    """Retriever used when no knowledge base is configured."""

    async def retrieve(self, item: WorkItem) -> str:
        return ""


class ClaudeCliAgent:
    """Run ``<executable> -p <prompt>`` as a subprocess."""

    def __init__(self, executable: str, working_dir: Path, timeout: float = 300):
        self.executable = executable
        self.working_dir = working_dir
        self.timeout = timeout

    async def execute(self, role: str, prompt: str) -> AgentResult:
        logger.info("Executing %s agent (%d chars of prompt)", role, len(prompt))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                "-p",
                prompt,
                cwd=str(self.working_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return AgentResult(False, "", f"{self.executable} not found")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("%s agent timed out after %ss", role, self.timeout)
            return AgentResult(False, "", f"timed out after {self.timeout}s")

        output = stdout.decode(errors="replace")
        if proc.returncode != 0:
            error = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            return AgentResult(False, output, error)
        return AgentResult(True, output)


class AnthropicAgent:
    """Call the Messages API directly."""

    def __init__(self, api_key: str, model: str, max_tokens: int = 4096):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    async def execute(self, role: str, prompt: str) -> AgentResult:
        logger.info("Calling %s for %s agent", self.model, role)
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            logger.error("Anthropic call for %s failed: %s", role, exc)
            return AgentResult(False, "", str(exc))
        text = "".join(block.text for block in response.content if block.type == "text")
        return AgentResult(True, text)


def build_reasoning_agent(config: Config) -> ReasoningAgent:
    if config.anthropic_api_key:
        return AnthropicAgent(config.anthropic_api_key, config.model)
    return ClaudeCliAgent(config.claude_executable, config.working_dir, config.agent_timeout)
