"""Processing context assembly.

ContextBuilder joins a Classification with resolved credentials and the
agent key into a ProcessingContext, the flat string map an execution unit
consumes. Required fields are checked per mode when the context is
constructed, so a context that exists is always complete.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from agent_gateway.credentials.store import AgentKeyStore, CredentialStore
from agent_gateway.errors import AgentNotConfiguredError, MalformedEventError, NotConfiguredError
from agent_gateway.webhook.classifier import Classification
from agent_gateway.webhook.models import ProcessingMode, WebhookEnvelope

logger = logging.getLogger(__name__)

_COMMON_FIELDS = (
    "gitlab_url",
    "gitlab_token",
    "project_id",
    "project_namespace",
    "clone_url",
    "anthropic_api_key",
)

REQUIRED_FIELDS: dict[ProcessingMode, tuple[str, ...]] = {
    ProcessingMode.ISSUE: _COMMON_FIELDS + ("issue_iid", "issue_title", "issue_description"),
    ProcessingMode.ISSUE_COMMENT: _COMMON_FIELDS + (
        "issue_iid", "issue_title", "issue_description", "comment_id", "user_prompt",
    ),
    ProcessingMode.MR_COMMENT: _COMMON_FIELDS + (
        "mr_iid", "mr_title", "mr_description", "source_branch", "target_branch",
        "comment_id", "user_prompt",
    ),
    ProcessingMode.MR_CREATION: _COMMON_FIELDS + (
        "mr_iid", "mr_title", "mr_description", "source_branch", "target_branch", "user_prompt",
    ),
}


class ProcessingContext(BaseModel):
    """Execution context handed to one execution unit.

    Field aliases are the wire keys. ``to_payload`` omits fields that are
    None, so optional data never travels as null.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    mode: ProcessingMode = Field(alias="PROCESSING_MODE")

    gitlab_url: str | None = Field(default=None, alias="GITLAB_URL")
    gitlab_token: str | None = Field(default=None, alias="GITLAB_TOKEN")
    project_id: str | None = Field(default=None, alias="GITLAB_PROJECT_ID")
    project_namespace: str | None = Field(default=None, alias="PROJECT_NAMESPACE")
    clone_url: str | None = Field(default=None, alias="GIT_CLONE_URL")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    author: str | None = Field(default=None, alias="AUTHOR_USERNAME")

    user_prompt: str | None = Field(default=None, alias="USER_PROMPT")
    comment_id: str | None = Field(default=None, alias="COMMENT_ID")
    discussion_id: str | None = Field(default=None, alias="DISCUSSION_ID")

    issue_iid: str | None = Field(default=None, alias="ISSUE_IID")
    issue_title: str | None = Field(default=None, alias="ISSUE_TITLE")
    issue_description: str | None = Field(default=None, alias="ISSUE_DESCRIPTION")

    mr_iid: str | None = Field(default=None, alias="MR_IID")
    mr_title: str | None = Field(default=None, alias="MR_TITLE")
    mr_description: str | None = Field(default=None, alias="MR_DESCRIPTION")
    source_branch: str | None = Field(default=None, alias="SOURCE_BRANCH")
    target_branch: str | None = Field(default=None, alias="TARGET_BRANCH")

    file_path: str | None = Field(default=None, alias="FILE_PATH")
    line_number: str | None = Field(default=None, alias="LINE_NUMBER")
    base_sha: str | None = Field(default=None, alias="BASE_SHA")
    head_sha: str | None = Field(default=None, alias="HEAD_SHA")
    start_sha: str | None = Field(default=None, alias="START_SHA")

    project_url: str | None = Field(default=None, alias="PROJECT_URL")
    issue_url: str | None = Field(default=None, alias="ISSUE_URL")
    mr_url: str | None = Field(default=None, alias="MR_URL")
    discussion_url: str | None = Field(default=None, alias="DISCUSSION_URL")

    @model_validator(mode="after")
    def _check_required(self) -> ProcessingContext:
        missing = [name for name in REQUIRED_FIELDS[self.mode] if getattr(self, name) is None]
        if missing:
            raise MalformedEventError(
                f"Missing required fields for {self.mode.value}: {', '.join(missing)}",
            )
        return self

    def to_payload(self) -> dict[str, str]:
        payload = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        return {key: str(value) for key, value in payload.items()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProcessingContext:
        """Validate a wire payload; raises MalformedEventError on any problem."""
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MalformedEventError("Invalid processing context", detail=str(e)) from e


def reference_urls(
    web_url: str | None,
    namespace: str,
    classification: Classification,
) -> dict[str, str]:
    """Browser URLs for the project and the object the event concerns."""
    base = (web_url or f"https://gitlab.com/{namespace}").rstrip("/")
    urls = {"project_url": base}

    object_url = None
    if classification.mode in (ProcessingMode.MR_COMMENT, ProcessingMode.MR_CREATION):
        if classification.merge_request is not None:
            object_url = f"{base}/-/merge_requests/{classification.merge_request.iid}"
            urls["mr_url"] = object_url
    elif classification.issue is not None:
        object_url = f"{base}/-/issues/{classification.issue.iid}"
        urls["issue_url"] = object_url

    comment = classification.comment
    if object_url and comment is not None and comment.discussion_id:
        urls["discussion_url"] = f"{object_url}#note_{comment.id}"
    return urls


class ContextBuilder:
    def __init__(self, store: CredentialStore, agent_keys: AgentKeyStore) -> None:
        self._store = store
        self._agent_keys = agent_keys

    def build(self, classification: Classification, envelope: WebhookEnvelope) -> ProcessingContext:
        """Assemble the context for one classified event.

        Raises:
            NotConfiguredError: No project or group credentials cover the project.
            AgentNotConfiguredError: The agent API key has not been stored.
            MalformedEventError: A field the mode requires is missing.
        """
        project = envelope.project
        resolved = self._store.resolve(project.id, project.namespace)
        if resolved is None:
            raise NotConfiguredError(f"GitLab credentials not configured for project {project.id}")

        agent = self._agent_keys.get()
        if agent is None:
            raise AgentNotConfiguredError("Agent API key not configured")

        fields: dict[str, Any] = {
            "mode": classification.mode,
            "gitlab_url": resolved.base_url,
            "gitlab_token": resolved.token,
            "project_id": project.id,
            "project_namespace": project.namespace or None,
            "clone_url": project.clone_url or None,
            "anthropic_api_key": agent.api_key,
            "author": envelope.actor.handle or None,
        }
        fields.update(reference_urls(project.web_url, project.namespace, classification))

        if classification.mode != ProcessingMode.ISSUE:
            fields["user_prompt"] = classification.prompt

        if classification.issue is not None:
            fields["issue_iid"] = classification.issue.iid
            fields["issue_title"] = classification.issue.title
            fields["issue_description"] = classification.issue.description

        if classification.merge_request is not None:
            mr = classification.merge_request
            fields["mr_iid"] = mr.iid
            fields["mr_title"] = mr.title
            fields["mr_description"] = mr.description
            fields["source_branch"] = mr.source_branch
            fields["target_branch"] = mr.target_branch

        if classification.comment is not None:
            fields["comment_id"] = classification.comment.id
            fields["discussion_id"] = classification.comment.discussion_id

        anchor = classification.anchor
        if anchor is not None:
            fields["file_path"] = anchor.file_path
            fields["line_number"] = str(anchor.line) if anchor.line is not None else None
            fields["base_sha"] = anchor.base_sha
            fields["head_sha"] = anchor.head_sha
            fields["start_sha"] = anchor.start_sha

        context = ProcessingContext(**fields)
        logger.debug(
            "Built %s context for project %s (anchor=%s)",
            context.mode.value, project.id, anchor is not None,
        )
        return context
