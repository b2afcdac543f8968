"""Coding agent invocation inside an execution unit.

The agent itself is an external program. ``SubprocessAgentRunner`` starts
the configured command in the event's workspace directory, writes the
prompt to its stdin and enforces a timeout. With a ``GitCheckout`` the
workspace is first cloned from ``GIT_CLONE_URL`` and, for merge requests,
switched to ``SOURCE_BRANCH``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from agent_gateway.webhook.context import ProcessingContext
from agent_gateway.webhook.models import ProcessingMode

logger = logging.getLogger(__name__)

# Context keys exported to the agent process environment.
_EXPORTED_KEYS = (
    "ANTHROPIC_API_KEY",
    "GITLAB_URL",
    "GITLAB_TOKEN",
    "GITLAB_PROJECT_ID",
    "PROJECT_NAMESPACE",
    "GIT_CLONE_URL",
    "PROCESSING_MODE",
)

_MR_MODES = (ProcessingMode.MR_COMMENT, ProcessingMode.MR_CREATION)


@dataclass
class AgentResult:
    success: bool
    output: str
    error: str | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0


class AgentRunner(Protocol):
    async def run(self, prompt: str, context: ProcessingContext) -> AgentResult: ...


def workspace_name(context: ProcessingContext) -> str:
    """Directory name unique to the object this context concerns."""
    object_id = context.comment_id or context.mr_iid or context.issue_iid or "event"
    raw = f"{context.mode.value}-{context.project_id}-{object_id}"
    return re.sub(r"[^A-Za-z0-9_.-]", "_", raw)


class WorkspaceError(Exception):
    """The repository could not be checked out into the workspace."""


def authenticated_clone_url(clone_url: str, token: str | None) -> str:
    """Embed ``token`` as ``oauth2`` basic credentials in an HTTP(S) clone URL."""
    parts = urlsplit(clone_url)
    if not token or parts.scheme not in ("http", "https") or not parts.hostname:
        return clone_url
    netloc = f"oauth2:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


class GitCheckout:
    """Clones the event's repository and, for merge requests, its source branch."""

    def __init__(
        self,
        git_command: tuple[str, ...] | list[str] = ("git",),
        timeout_seconds: float = 300.0,
    ) -> None:
        self.git_command = tuple(git_command)
        self.timeout_seconds = timeout_seconds

    async def _git(self, *args: str, cwd: Path | None = None, token: str | None = None) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.git_command, *args,
                cwd=str(cwd) if cwd else None,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WorkspaceError(f"Could not run git: {e}") from e
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise WorkspaceError(f"git {args[0]} timed out after {self.timeout_seconds}s") from None
        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            if token:
                detail = detail.replace(token, "***").replace(quote(token, safe=""), "***")
            raise WorkspaceError(f"git {args[0]} failed with code {process.returncode}: {detail}")

    async def prepare(self, workdir: Path, context: ProcessingContext) -> None:
        """Make ``workdir`` a checkout of the context's repository.

        An existing checkout is reused. Failing to switch to the source
        branch leaves the default branch checked out.
        """
        if not context.clone_url:
            workdir.mkdir(parents=True, exist_ok=True)
            return

        if not (workdir / ".git").is_dir():
            workdir.parent.mkdir(parents=True, exist_ok=True)
            url = authenticated_clone_url(context.clone_url, context.gitlab_token)
            logger.info("Cloning %s into %s", context.clone_url, workdir)
            await self._git("clone", "--quiet", url, str(workdir), token=context.gitlab_token)

        branch = context.source_branch
        if context.mode in _MR_MODES and branch:
            try:
                await self._git("checkout", "--quiet", branch, cwd=workdir)
            except WorkspaceError as e:
                logger.warning("Staying on default branch, could not check out %s: %s", branch, e)


class SubprocessAgentRunner:
    """Runs the agent command with the prompt on stdin."""

    def __init__(
        self,
        command: tuple[str, ...] | list[str],
        timeout_seconds: float = 840.0,
        workspace_root: str | Path = "/tmp/workspaces",  # noqa: S108
        checkout: GitCheckout | None = None,
    ) -> None:
        if not command:
            raise ValueError("agent command must not be empty")
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds
        self.workspace_root = Path(workspace_root)
        self.checkout = checkout

    def _environment(self, context: ProcessingContext) -> dict[str, str]:
        payload = context.to_payload()
        env = dict(os.environ)
        env.update({key: payload[key] for key in _EXPORTED_KEYS if key in payload})
        return env

    async def run(self, prompt: str, context: ProcessingContext) -> AgentResult:
        workdir = self.workspace_root / workspace_name(context)
        start = time.monotonic()
        if self.checkout is None:
            workdir.mkdir(parents=True, exist_ok=True)
        else:
            try:
                await self.checkout.prepare(workdir, context)
            except WorkspaceError as e:
                logger.error("Workspace setup failed for %s: %s", workdir, e)
                return AgentResult(
                    success=False, output="", error=f"Failed to prepare workspace: {e}",
                    duration_seconds=time.monotonic() - start,
                )
        logger.info("Starting agent in %s (timeout %ss)", workdir, self.timeout_seconds)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(workdir),
                env=self._environment(context),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Could not start agent command %s: %s", self.command[0], e)
            return AgentResult(success=False, output="", error=f"Failed to start agent: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode()), timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Agent timed out after %ss", self.timeout_seconds)
            return AgentResult(
                success=False,
                output="",
                error=f"Agent timed out after {self.timeout_seconds}s",
                exit_code=-1,
                duration_seconds=time.monotonic() - start,
            )

        duration = time.monotonic() - start
        output = stdout.decode(errors="replace").strip()
        exit_code = process.returncode or 0
        if exit_code != 0:
            error = stderr.decode(errors="replace").strip() or f"Agent exited with code {exit_code}"
            logger.warning("Agent exited with code %d after %.1fs", exit_code, duration)
            return AgentResult(
                success=False, output=output, error=error,
                exit_code=exit_code, duration_seconds=duration,
            )

        logger.info("Agent finished in %.1fs", duration)
        return AgentResult(success=True, output=output, exit_code=0, duration_seconds=duration)
