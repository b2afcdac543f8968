"""Administrative endpoints for configuring credentials.

Provides endpoints for:
- Storing project credentials after validating the token with GitLab
- Storing group credentials used as a fallback for projects in the group
- Storing the coding agent's API key
- Reporting what is configured, without revealing any secret
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_gateway.credentials.models import (
    DEFAULT_BASE_URL,
    AgentCredential,
    CredentialScope,
    GroupCredential,
    OwnerKey,
    ProjectCredential,
)
from agent_gateway.gitlab.client import GitLabClient

if TYPE_CHECKING:
    import httpx

    from agent_gateway.credentials.store import AgentKeyStore, CredentialStore

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/gitlab"


class ProjectSetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gitlab_url: str = Field(default=DEFAULT_BASE_URL, alias="gitlabUrl")
    project_id: str = Field(alias="projectId", min_length=1)
    project_namespace: str | None = Field(default=None, alias="projectNamespace")
    token: str = Field(min_length=1)
    webhook_secret: str = Field(alias="webhookSecret", min_length=1)


class GroupSetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gitlab_url: str = Field(default=DEFAULT_BASE_URL, alias="gitlabUrl")
    group_id: str = Field(alias="groupId", min_length=1)
    group_path: str = Field(alias="groupPath", min_length=1)
    group_name: str | None = Field(default=None, alias="groupName")
    token: str = Field(min_length=1)
    webhook_secret: str = Field(alias="webhookSecret", min_length=1)


class AgentSetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="anthropicApiKey", min_length=1)


async def _read_body(request: Request, model: type[BaseModel]) -> BaseModel | JSONResponse:
    try:
        return model.model_validate(await request.json())
    except json.JSONDecodeError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        return JSONResponse(
            {"error": "Invalid request", "fields": fields},
            status_code=400,
        )


def _webhook_url(request: Request) -> str:
    return str(request.base_url).rstrip("/") + WEBHOOK_PATH


def create_setup_router(
    store: CredentialStore,
    agent_keys: AgentKeyStore,
    client_factory: Callable[..., GitLabClient] = GitLabClient,
    gitlab_transport: httpx.AsyncBaseTransport | None = None,
) -> APIRouter:
    """Create the credential setup API router."""
    router = APIRouter()

    async def _validate(gitlab_url: str, token: str) -> str | None:
        client = client_factory(gitlab_url, token, transport=gitlab_transport)
        validation = await client.validate_token()
        if validation.valid:
            logger.info("Validated GitLab token for user %s", validation.username)
            return None
        return validation.error or "Token validation failed"

    @router.post("/gitlab-setup/configure")
    async def configure_project(request: Request) -> JSONResponse:
        body = await _read_body(request, ProjectSetupRequest)
        if isinstance(body, JSONResponse):
            return body
        assert isinstance(body, ProjectSetupRequest)

        error = await _validate(body.gitlab_url, body.token)
        if error:
            return JSONResponse({"error": error}, status_code=400)

        record = ProjectCredential(
            project_id=body.project_id,
            base_url=body.gitlab_url,
            token=body.token,
            webhook_secret=body.webhook_secret,
            project_namespace=body.project_namespace,
        )
        store.put(record.owner_key, record)
        return JSONResponse({
            "success": True,
            "message": "GitLab integration configured successfully",
            "webhookUrl": _webhook_url(request),
        })

    @router.post("/gitlab-setup/configure-group")
    async def configure_group(request: Request) -> JSONResponse:
        body = await _read_body(request, GroupSetupRequest)
        if isinstance(body, JSONResponse):
            return body
        assert isinstance(body, GroupSetupRequest)

        error = await _validate(body.gitlab_url, body.token)
        if error:
            return JSONResponse({"error": error}, status_code=400)

        record = GroupCredential(
            group_id=body.group_id,
            group_path=body.group_path,
            group_name=body.group_name,
            base_url=body.gitlab_url,
            token=body.token,
            webhook_secret=body.webhook_secret,
            auto_discover_projects=True,
        )
        store.put(record.owner_key, record)
        return JSONResponse({
            "success": True,
            "message": "GitLab group integration configured successfully",
            "webhookUrl": _webhook_url(request),
        })

    @router.get("/gitlab-setup/status")
    async def status() -> JSONResponse:
        projects = [key.owner_id for key in store.list_keys(CredentialScope.PROJECT)]
        groups = [
            {"groupId": group_id, "groupPath": path}
            for group_id, path in store.group_paths().items()
        ]
        return JSONResponse({
            "configured": bool(projects or groups),
            "projects": projects,
            "groups": groups,
            "agentConfigured": agent_keys.get() is not None,
        })

    @router.delete("/gitlab-setup/projects/{project_id}")
    async def delete_project(project_id: str) -> JSONResponse:
        if not store.delete(OwnerKey.project(project_id)):
            return JSONResponse({"error": "Project not configured"}, status_code=404)
        return JSONResponse({"success": True})

    @router.post("/agent-setup")
    async def configure_agent(request: Request) -> JSONResponse:
        body = await _read_body(request, AgentSetupRequest)
        if isinstance(body, JSONResponse):
            return body
        assert isinstance(body, AgentSetupRequest)

        agent_keys.put(AgentCredential(api_key=body.api_key))
        return JSONResponse({"success": True, "message": "Agent API key stored"})

    return router
