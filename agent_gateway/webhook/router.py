"""Dispatch of processing contexts to per-event execution units.

Each event is addressed as ``<platform>-<mode>-<event_id>``; the resolver
turns that address into the unit's base URL. One POST to ``/process`` is
made per dispatch and its result is never retried here: the source
platform's webhook redelivery is the retry authority.
"""

from __future__ import annotations

import json
import logging
import re

import httpx
from pydantic import ValidationError

from agent_gateway.config import DEFAULT_UNIT_URL_TEMPLATE
from agent_gateway.errors import DispatchTransportError, ExecutionFailure
from agent_gateway.webhook.context import ProcessingContext
from agent_gateway.webhook.models import DispatchOutcome, EventIdentity, ProcessingMode

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")

PROCESS_PATH = "/process"


def _normalize_part(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value.strip().lower())


def derive_address(platform: str, mode: ProcessingMode | str, event_id: str | int) -> str:
    """Stable unit address for one event.

    Every part is reduced to ``[a-z0-9_]`` so ``-`` only ever appears as the
    separator and distinct normalized triples never collide.
    """
    mode_value = mode.value if isinstance(mode, ProcessingMode) else mode
    parts = (platform, mode_value, str(event_id))
    if not all(part.strip() for part in parts):
        raise ValueError("platform, mode and event_id must be non-empty")
    return "-".join(_normalize_part(part) for part in parts)


class UnitResolver:
    """Maps a dispatch address to the base URL of its execution unit."""

    def __init__(self, url_template: str = DEFAULT_UNIT_URL_TEMPLATE) -> None:
        if "{address}" not in url_template:
            raise ValueError("unit URL template must contain '{address}'")
        self._template = url_template

    def resolve(self, address: str) -> str:
        return self._template.format(address=address).rstrip("/")


class DispatchRouter:
    def __init__(
        self,
        resolver: UnitResolver,
        timeout_seconds: float = 900.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._resolver = resolver
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def address_for(self, identity: EventIdentity) -> str:
        return derive_address(identity.platform, identity.mode, identity.event_id)

    async def dispatch(self, context: ProcessingContext, identity: EventIdentity) -> DispatchOutcome:
        """Send ``context`` to the unit for ``identity`` and interpret its answer.

        Returns the outcome when the unit reports success.

        Raises:
            ExecutionFailure: The unit ran and reported failure.
            DispatchTransportError: The unit was unreachable, still
                initializing, or answered with something other than an outcome.
        """
        address = self.address_for(identity)
        url = self._resolver.resolve(address) + PROCESS_PATH
        logger.info("Dispatching %s event %s to %s", identity.mode.value, identity.event_id, address)

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(
                    url, json=context.to_payload(), timeout=self._timeout_seconds,
                )
        except httpx.HTTPError as e:
            logger.warning("Execution unit %s unreachable: %s", address, e)
            raise DispatchTransportError("Execution unit unreachable", detail=str(e)) from e

        if resp.status_code == 503:
            logger.warning("Execution unit %s still initializing", address)
            raise DispatchTransportError("Execution unit not ready")

        try:
            outcome = DispatchOutcome.model_validate(resp.json())
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                "Execution unit %s returned malformed body (status %d)", address, resp.status_code,
            )
            raise DispatchTransportError("Malformed response from execution unit") from e

        if outcome.success and resp.is_success:
            logger.info("Execution unit %s succeeded: %s", address, outcome.message)
            return outcome

        if not outcome.success:
            error = outcome.error or outcome.message
            logger.warning("Execution unit %s reported failure: %s", address, error)
            raise ExecutionFailure(error, detail=outcome.message)

        raise DispatchTransportError(
            f"Execution unit reported success with status {resp.status_code}",
        )
