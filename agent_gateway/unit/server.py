"""Request handler of an execution unit.

Loaded in the background by ``agent_gateway.unit.bootstrap``; importing
this module pulls in FastAPI and pydantic.
"""

from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent_gateway.config import UnitSettings
from agent_gateway.errors import MalformedEventError
from agent_gateway.unit.prompts import build_prompt
from agent_gateway.unit.runner import AgentRunner, GitCheckout, SubprocessAgentRunner
from agent_gateway.webhook.context import ProcessingContext
from agent_gateway.webhook.models import DispatchOutcome

logger = logging.getLogger(__name__)

# Tail of the agent's stdout returned in the outcome.
_MAX_OUTPUT_CHARS = 4000


def create_unit_app_from_env() -> FastAPI:
    """Factory used by the bootstrap: reads config from environment variables."""
    settings = UnitSettings.from_env()
    runner = SubprocessAgentRunner(
        settings.agent_command,
        timeout_seconds=settings.agent_timeout_seconds,
        workspace_root=settings.workspace_root,
        checkout=GitCheckout() if settings.clone_repository else None,
    )
    return create_unit_app(runner)


def _outcome_response(outcome: DispatchOutcome, status_code: int) -> JSONResponse:
    return JSONResponse(outcome.model_dump(mode="json", exclude_none=True), status_code=status_code)


def create_unit_app(runner: AgentRunner) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/process")
    async def process(request: Request) -> JSONResponse:
        try:
            context = ProcessingContext.from_payload(await request.json())
        except (json.JSONDecodeError, MalformedEventError) as e:
            message = e.message if isinstance(e, MalformedEventError) else "Invalid JSON body"
            return _outcome_response(
                DispatchOutcome(success=False, message="Invalid processing context", error=message),
                400,
            )

        logger.info("Processing %s for project %s", context.mode.value, context.project_id)
        try:
            result = await runner.run(build_prompt(context), context)
        except Exception as e:
            logger.exception("Agent runner raised")
            return _outcome_response(
                DispatchOutcome(success=False, message="Agent execution failed", error=str(e)),
                500,
            )

        if not result.success:
            return _outcome_response(
                DispatchOutcome(
                    success=False, message="Agent execution failed", error=result.error,
                ),
                500,
            )

        return _outcome_response(
            DispatchOutcome(
                success=True,
                message=f"Processed {context.mode.value} in {result.duration_seconds:.1f}s",
                output=result.output[-_MAX_OUTPUT_CHARS:] or None,
            ),
            200,
        )

    return app
