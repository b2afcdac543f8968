"""GitLab webhook payload parsing.

Translates the raw JSON body of a GitLab webhook into a WebhookEnvelope.

GitLab payload structure (relevant subset):
{
  "object_kind": "issue" | "note" | "merge_request" | ...,
  "user": {"id": 1, "username": "alice", "bot": false},
  "project": {"id": 42, "path_with_namespace": "acme/api",
              "git_http_url": "https://gitlab.com/acme/api.git",
              "web_url": "https://gitlab.com/acme/api"},
  "object_attributes": {...},
  "issue": {...},            # note events on issues
  "merge_request": {...}     # note events on merge requests
}
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from agent_gateway.errors import MalformedEventError
from agent_gateway.webhook.models import (
    ActorCapabilities,
    CodeAnchor,
    CommentEnvelope,
    CommentRef,
    IssueEnvelope,
    IssueRef,
    MergeRequestEnvelope,
    MergeRequestRef,
    OtherEnvelope,
    ProjectRef,
)

logger = logging.getLogger(__name__)

# GitLab reports present-tense verbs; the classifier works with past tense.
_ACTION_NAMES = {
    "open": "opened",
    "reopen": "reopened",
    "close": "closed",
    "update": "updated",
    "merge": "merged",
    "approved": "approved",
    "unapproved": "unapproved",
    "approval": "approval",
    "unapproval": "unapproval",
}


def normalize_action(action: str | None) -> str:
    if not action:
        return ""
    return _ACTION_NAMES.get(action, action)


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise MalformedEventError(f"Missing '{key}' in webhook payload")
    return value


def _labels(*sources: Any) -> tuple[str, ...]:
    for source in sources:
        if isinstance(source, list) and source:
            names = [
                str(label.get("title") or label.get("name"))
                for label in source
                if isinstance(label, dict) and (label.get("title") or label.get("name"))
            ]
            return tuple(names)
    return ()


def _project(data: dict[str, Any]) -> ProjectRef:
    project = _section(data, "project")
    project_id = _str_or_none(project.get("id"))
    if project_id is None:
        raise MalformedEventError("No project information")
    return ProjectRef(
        id=project_id,
        namespace=str(project.get("path_with_namespace") or ""),
        clone_url=str(project.get("git_http_url") or project.get("http_url") or ""),
        web_url=_str_or_none(project.get("web_url")),
    )


def _actor(data: dict[str, Any], is_system: bool = False) -> ActorCapabilities:
    user = data.get("user") or {}
    return ActorCapabilities(
        id=_str_or_none(user.get("id")),
        handle=str(user.get("username") or ""),
        is_bot=user.get("bot") is True,
        is_system=is_system,
    )


def _issue(attrs: dict[str, Any], labels: Any = None) -> IssueRef:
    return IssueRef(
        id=str(attrs["id"]),
        iid=str(attrs["iid"]),
        title=str(attrs.get("title") or ""),
        description=str(attrs.get("description") or ""),
        labels=_labels(labels, attrs.get("labels")),
    )


def _merge_request(attrs: dict[str, Any]) -> MergeRequestRef:
    return MergeRequestRef(
        id=str(attrs["id"]),
        iid=str(attrs["iid"]),
        title=str(attrs.get("title") or ""),
        description=str(attrs.get("description") or ""),
        source_branch=str(attrs["source_branch"]),
        target_branch=str(attrs["target_branch"]),
    )


def _anchor(position: Any) -> CodeAnchor | None:
    if not isinstance(position, dict):
        return None
    file_path = position.get("new_path") or position.get("old_path")
    if not file_path:
        return None
    line = position.get("new_line") or position.get("old_line")
    return CodeAnchor(
        file_path=str(file_path),
        line=int(line) if line is not None else None,
        base_sha=_str_or_none(position.get("base_sha")),
        head_sha=_str_or_none(position.get("head_sha")),
        start_sha=_str_or_none(position.get("start_sha")),
    )


def parse_gitlab_payload(
    data: Any,
) -> IssueEnvelope | MergeRequestEnvelope | CommentEnvelope | OtherEnvelope:
    """Build a WebhookEnvelope from a decoded GitLab webhook body.

    Raises:
        MalformedEventError: If the body is not an object, has no project,
            or lacks a field the event kind requires.
    """
    if not isinstance(data, dict):
        raise MalformedEventError("Webhook payload must be a JSON object")

    object_kind = str(data.get("object_kind") or data.get("event_type") or "")
    project = _project(data)

    try:
        if object_kind == "issue":
            attrs = _section(data, "object_attributes")
            return IssueEnvelope(
                action=normalize_action(attrs.get("action")),
                actor=_actor(data),
                project=project,
                object_id=str(attrs["id"]),
                issue=_issue(attrs, data.get("labels")),
            )

        if object_kind == "merge_request":
            attrs = _section(data, "object_attributes")
            return MergeRequestEnvelope(
                action=normalize_action(attrs.get("action")),
                actor=_actor(data),
                project=project,
                object_id=str(attrs["id"]),
                merge_request=_merge_request(attrs),
            )

        if object_kind == "note":
            attrs = _section(data, "object_attributes")
            issue = data.get("issue")
            merge_request = data.get("merge_request")
            return CommentEnvelope(
                action=normalize_action(attrs.get("action") or "create"),
                actor=_actor(data, is_system=attrs.get("system") is True),
                project=project,
                object_id=str(attrs["id"]),
                comment=CommentRef(
                    id=str(attrs["id"]),
                    body=str(attrs.get("note") or ""),
                    noteable_type=str(attrs.get("noteable_type") or ""),
                    discussion_id=_str_or_none(attrs.get("discussion_id")),
                ),
                issue=_issue(issue) if isinstance(issue, dict) else None,
                merge_request=(
                    _merge_request(merge_request) if isinstance(merge_request, dict) else None
                ),
                anchor=_anchor(attrs.get("position")),
            )
    except KeyError as e:
        raise MalformedEventError(f"Missing field {e.args[0]!r} in {object_kind} event") from e
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {object_kind} event", detail=str(e)) from e
    except (ValueError, TypeError) as e:
        raise MalformedEventError(f"Invalid {object_kind} event", detail=str(e)) from e

    attrs = data.get("object_attributes") or {}
    logger.debug("Unhandled GitLab object kind %r", object_kind)
    return OtherEnvelope(
        action=normalize_action(attrs.get("action")),
        actor=_actor(data),
        project=project,
        object_id=str(attrs.get("id") or data.get("checkout_sha") or "unknown"),
        object_kind=object_kind or "unknown",
    )
