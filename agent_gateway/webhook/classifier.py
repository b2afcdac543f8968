"""Event classification: decide whether an inbound event warrants processing.

``classify`` is a pure function of the envelope and the classifier
configuration. The decision table is evaluated top to bottom and the first
matching rule wins:

1. system-generated actor            -> Drop(SYSTEM_EVENT)
2. bot actor                         -> Drop(BOT_ACTOR)
3. issue, action != opened           -> Drop(ISSUE_ACTION)
4. merge request, action != opened   -> Drop(MERGE_REQUEST_ACTION)
5. comment                           -> trigger search on the body
6. merge request opened              -> trigger search on the description
7. issue opened                      -> always classified
8. anything else                     -> Drop(UNSUPPORTED_KIND)

Trigger search ignores fenced code blocks and inline code spans, so quoting
the trigger in code never starts an agent run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from agent_gateway.config import ClassifierConfig
from agent_gateway.webhook.models import (
    ActorCapabilities,
    CodeAnchor,
    CommentEnvelope,
    CommentRef,
    IssueEnvelope,
    IssueRef,
    MergeRequestEnvelope,
    MergeRequestRef,
    ProcessingMode,
    WebhookEnvelope,
)

logger = logging.getLogger(__name__)

OPENED = "opened"

_NOTEABLE_MODES = {
    "issue": ProcessingMode.ISSUE_COMMENT,
    "mergerequest": ProcessingMode.MR_COMMENT,
}

# Unclosed fences run to the end of the text.
_FENCED_BLOCK = re.compile(r"^[ \t]*(```|~~~).*?(?:^[ \t]*\1[^\n]*$|\Z)", re.DOTALL | re.MULTILINE)
_INLINE_SPAN = re.compile(r"(`+)(?!`).+?(?<!`)\1(?!`)", re.DOTALL)


class DropReason(str, Enum):
    SYSTEM_EVENT = "system_event"
    BOT_ACTOR = "bot_actor"
    ISSUE_ACTION = "issue_action"
    MERGE_REQUEST_ACTION = "merge_request_action"
    NO_TRIGGER = "no_trigger"
    UNSUPPORTED_NOTEABLE = "unsupported_noteable"
    UNSUPPORTED_KIND = "unsupported_kind"


_DROP_MESSAGES = {
    DropReason.SYSTEM_EVENT: "system event",
    DropReason.BOT_ACTOR: "bot actor",
    DropReason.ISSUE_ACTION: "non-opening issue action",
    DropReason.MERGE_REQUEST_ACTION: "non-opening MR action",
    DropReason.NO_TRIGGER: "no trigger",
    DropReason.UNSUPPORTED_NOTEABLE: "unsupported comment target",
    DropReason.UNSUPPORTED_KIND: "unsupported event kind",
}


@dataclass(frozen=True)
class Drop:
    """The event is acknowledged but deliberately not processed."""

    reason: DropReason

    @property
    def message(self) -> str:
        return _DROP_MESSAGES[self.reason]


@dataclass(frozen=True)
class Classification:
    """An event selected for processing, with the parts the context builder reads."""

    mode: ProcessingMode
    prompt: str = ""
    issue: IssueRef | None = None
    merge_request: MergeRequestRef | None = None
    comment: CommentRef | None = None
    anchor: CodeAnchor | None = None


def mask_code(text: str) -> str:
    """Blank out fenced blocks and inline code spans, preserving offsets."""

    def blank(match: re.Match[str]) -> str:
        return re.sub(r"[^\n]", " ", match.group(0))

    return _INLINE_SPAN.sub(blank, _FENCED_BLOCK.sub(blank, text))


def trigger_pattern(token: str) -> re.Pattern[str]:
    # Bounded so that "@duo-agent-x" and "x@duo-agent" do not count.
    return re.compile(r"(?<![\w@])" + re.escape(token) + r"(?![\w-])", re.IGNORECASE)


def extract_prompt(text: str, token: str) -> str | None:
    """Return the text after the first trigger outside code, or None if absent.

    The prompt is cut from the original text, so code spans written after
    the trigger are kept.
    """
    if not text:
        return None
    match = trigger_pattern(token).search(mask_code(text))
    if match is None:
        return None
    return text[match.end():].strip()


class EventClassifier:
    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self._config = config or ClassifierConfig()

    def is_bot(self, actor: ActorCapabilities) -> bool:
        if actor.is_bot:
            return True
        handle = actor.handle.lower()
        if handle in self._config.bot_handles:
            return True
        return any(marker in handle for marker in self._config.bot_handle_markers)

    def classify(self, envelope: WebhookEnvelope) -> Classification | Drop:
        if envelope.actor.is_system:
            return Drop(DropReason.SYSTEM_EVENT)
        if self.is_bot(envelope.actor):
            return Drop(DropReason.BOT_ACTOR)

        if isinstance(envelope, IssueEnvelope) and envelope.action != OPENED:
            return Drop(DropReason.ISSUE_ACTION)
        if isinstance(envelope, MergeRequestEnvelope) and envelope.action != OPENED:
            return Drop(DropReason.MERGE_REQUEST_ACTION)

        if isinstance(envelope, CommentEnvelope):
            return self._classify_comment(envelope)

        if isinstance(envelope, MergeRequestEnvelope):
            mr = envelope.merge_request
            prompt = extract_prompt(mr.description, self._config.trigger_token)
            if prompt is None:
                return Drop(DropReason.NO_TRIGGER)
            return Classification(
                mode=ProcessingMode.MR_CREATION, prompt=prompt, merge_request=mr,
            )

        if isinstance(envelope, IssueEnvelope):
            return Classification(mode=ProcessingMode.ISSUE, issue=envelope.issue)

        return Drop(DropReason.UNSUPPORTED_KIND)

    def _classify_comment(self, envelope: CommentEnvelope) -> Classification | Drop:
        comment = envelope.comment
        mode = _NOTEABLE_MODES.get(comment.noteable_type.replace("_", "").lower())
        if mode is None:
            return Drop(DropReason.UNSUPPORTED_NOTEABLE)

        prompt = extract_prompt(comment.body, self._config.trigger_token)
        if prompt is None:
            return Drop(DropReason.NO_TRIGGER)

        return Classification(
            mode=mode,
            prompt=prompt,
            issue=envelope.issue,
            merge_request=envelope.merge_request,
            comment=comment,
            anchor=envelope.anchor,
        )


def classify(envelope: WebhookEnvelope, config: ClassifierConfig | None = None) -> Classification | Drop:
    return EventClassifier(config).classify(envelope)
