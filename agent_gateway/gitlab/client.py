"""Minimal GitLab REST client.

Covers the three calls the gateway needs: validating a token against the
identity endpoint, posting a comment (optionally as a thread reply), and
opening a merge request. Requests are retried on 429/5xx with exponential
backoff capped at 30s.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_BACKOFF_CAP_SECONDS = 30


class GitLabAPIError(Exception):
    """A GitLab API call failed after any retries."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class CommentTarget:
    """The issue or merge request a comment is posted on."""

    project_id: str
    kind: Literal["issue", "merge_request"]
    iid: str

    @property
    def collection(self) -> str:
        return "issues" if self.kind == "issue" else "merge_requests"


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    username: str | None = None
    error: str | None = None


class GitLabClient:
    """Async GitLab API v4 client authenticated with a private token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api_url = base_url.rstrip("/") + "/api/v4"
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self._token}

    async def _request(
        self, method: str, path: str, json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = self._api_url + path
        async with httpx.AsyncClient(verify=True, transport=self._transport) as client:
            for attempt in range(_MAX_RETRIES + 1):
                resp = await client.request(
                    method, url, json=json_body, headers=self._headers(),
                    timeout=self._timeout_seconds,
                )
                if resp.status_code < 400 or not self._should_retry(resp.status_code):
                    return resp
                if attempt < _MAX_RETRIES:
                    delay = min(2 ** attempt, _BACKOFF_CAP_SECONDS)
                    logger.debug(
                        "GitLab %s %s returned %d; retrying in %ss",
                        method, path, resp.status_code, delay,
                    )
                    await self._sleep(delay)
        return resp

    @staticmethod
    def _should_retry(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500

    async def validate_token(self) -> TokenValidation:
        """Check the token against ``GET /user``. Never raises for HTTP failures."""
        try:
            resp = await self._request("GET", "/user")
        except httpx.HTTPError as e:
            return TokenValidation(valid=False, error=f"Network error: {e}")
        if resp.status_code >= 400:
            return TokenValidation(
                valid=False, error=f"HTTP {resp.status_code}: {resp.reason_phrase}",
            )
        return TokenValidation(valid=True, username=resp.json().get("username"))

    async def post_comment(
        self, target: CommentTarget, body: str, discussion_id: str | None = None,
    ) -> dict[str, Any]:
        """Post ``body`` on the target, as a reply when ``discussion_id`` is given."""
        base = f"/projects/{quote(target.project_id, safe='')}/{target.collection}/{target.iid}"
        if discussion_id:
            path = f"{base}/discussions/{discussion_id}/notes"
        else:
            path = f"{base}/notes"
        resp = await self._request("POST", path, {"body": body})
        if resp.status_code >= 400:
            raise GitLabAPIError(
                f"Failed to post comment on {target.kind} {target.iid}", resp.status_code,
            )
        return resp.json()

    async def create_merge_request(
        self,
        project_id: str,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str = "",
    ) -> dict[str, Any]:
        path = f"/projects/{quote(project_id, safe='')}/merge_requests"
        resp = await self._request("POST", path, {
            "source_branch": source_branch,
            "target_branch": target_branch,
            "title": title,
            "description": description,
        })
        if resp.status_code >= 400:
            raise GitLabAPIError(
                f"Failed to create merge request from {source_branch}", resp.status_code,
            )
        return resp.json()
