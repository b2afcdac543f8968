"""Data models for the webhook dispatch pipeline.

WebhookEnvelope is a tagged union over ``kind``. Each variant carries only
the fields that kind of event has, so downstream code branches on the
variant type instead of probing for optional fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProcessingMode(str, Enum):
    ISSUE = "issue"
    ISSUE_COMMENT = "issue_comment"
    MR_COMMENT = "mr_comment"
    MR_CREATION = "mr_creation"


# --- Envelope parts ---


class ActorCapabilities(BaseModel):
    """Who triggered the event, flattened to the flags the classifier needs."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    handle: str
    is_bot: bool = False
    is_system: bool = False


class ProjectRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    namespace: str
    clone_url: str
    web_url: str | None = None


class IssueRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    iid: str
    title: str
    description: str = ""
    labels: tuple[str, ...] = ()


class MergeRequestRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    iid: str
    title: str
    description: str = ""
    source_branch: str
    target_branch: str


class CommentRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    body: str
    noteable_type: str
    discussion_id: str | None = None


class CodeAnchor(BaseModel):
    """File/line position of a line-anchored comment, copied through unchanged."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    line: int | None = None
    base_sha: str | None = None
    head_sha: str | None = None
    start_sha: str | None = None


# --- Envelope variants ---


class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str = ""
    actor: ActorCapabilities
    project: ProjectRef
    object_id: str


class IssueEnvelope(_EnvelopeBase):
    kind: Literal["issue"] = "issue"
    issue: IssueRef


class MergeRequestEnvelope(_EnvelopeBase):
    kind: Literal["merge_request"] = "merge_request"
    merge_request: MergeRequestRef


class CommentEnvelope(_EnvelopeBase):
    kind: Literal["comment"] = "comment"
    comment: CommentRef
    issue: IssueRef | None = None
    merge_request: MergeRequestRef | None = None
    anchor: CodeAnchor | None = None


class OtherEnvelope(_EnvelopeBase):
    kind: Literal["other"] = "other"
    object_kind: str


WebhookEnvelope = Annotated[
    IssueEnvelope | MergeRequestEnvelope | CommentEnvelope | OtherEnvelope,
    Field(discriminator="kind"),
]


# --- Dispatch results ---


class OutcomeAction(BaseModel):
    """A side effect the execution unit reports having performed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["comment_posted", "branch_created", "merge_request_opened"]
    reference: str | None = None


class DispatchOutcome(BaseModel):
    """Result body returned by an execution unit's ``/process`` endpoint."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    error: str | None = None
    output: str | None = None
    actions: list[OutcomeAction] = Field(default_factory=list)


class EventIdentity(BaseModel):
    """The triple a dispatch address is derived from."""

    model_config = ConfigDict(frozen=True)

    platform: str
    mode: ProcessingMode
    event_id: str


@dataclass
class WebhookResponse:
    """Pipeline response to return to the originating platform."""

    message: str
    status_code: int
    error: str | None = None

    def to_body(self) -> dict[str, str]:
        body = {"message": self.message}
        if self.error:
            body["error"] = self.error
        return body
