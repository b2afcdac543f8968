"""Prompt text handed to the coding agent, one formatter per processing mode."""

from __future__ import annotations

from agent_gateway.webhook.context import ProcessingContext
from agent_gateway.webhook.models import ProcessingMode

DEFAULT_USER_PROMPT = "Please review this and suggest how to proceed."

_ISSUE_STEPS = """\
The repository has been cloned to your current working directory. Please:
1. Explore the codebase to understand the structure and relevant files
2. Analyze the issue requirements thoroughly
3. Implement a solution that addresses the issue
4. Write appropriate tests if needed
5. Keep the change consistent with existing patterns"""


def _user_request(context: ProcessingContext) -> str:
    return context.user_prompt or DEFAULT_USER_PROMPT


def format_issue_prompt(context: ProcessingContext) -> str:
    return "\n\n".join([
        f'You are working on GitLab issue #{context.issue_iid}: "{context.issue_title}"',
        f"Project: {context.project_namespace}",
        f"Issue description:\n{context.issue_description or '(none)'}",
        f"Author: {context.author or 'unknown'}",
        _ISSUE_STEPS,
    ])


def format_comment_prompt(context: ProcessingContext) -> str:
    sections = [
        "You are responding to a mention in a GitLab comment.",
        f"User's request: {_user_request(context)}",
    ]
    if context.mode == ProcessingMode.ISSUE_COMMENT:
        sections.append(f"Context: GitLab issue #{context.issue_iid} - {context.issue_title}")
    else:
        sections.append(
            f"Context: GitLab merge request !{context.mr_iid} - {context.mr_title}\n"
            f"Branches: {context.source_branch} -> {context.target_branch}",
        )
    if context.file_path:
        location = context.file_path
        if context.line_number:
            location += f":{context.line_number}"
        sections.append(f"Code location: {location}")
    sections.append(f"Project: {context.project_namespace}\nAuthor: {context.author or 'unknown'}")
    sections.append("Please address the user's request directly.")
    return "\n\n".join(sections)


def format_mr_prompt(context: ProcessingContext) -> str:
    return "\n\n".join([
        f'You are working on GitLab merge request !{context.mr_iid}: "{context.mr_title}"',
        f"MR description:\n{context.mr_description or '(none)'}",
        f"User's request: {_user_request(context)}",
        f"Branches: {context.source_branch} -> {context.target_branch}\n"
        f"Project: {context.project_namespace}",
        "Please address the user's request in the context of this merge request.",
    ])


def build_prompt(context: ProcessingContext) -> str:
    if context.mode == ProcessingMode.ISSUE:
        return format_issue_prompt(context)
    if context.mode == ProcessingMode.MR_CREATION:
        return format_mr_prompt(context)
    return format_comment_prompt(context)
