"""Runtime configuration for the gateway and the execution unit.

Settings are plain Pydantic models. They are read from the environment
only at process entry points (``from_env``) and then passed explicitly
into each component's constructor.
"""

from __future__ import annotations

import os
import shlex

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TRIGGER_TOKEN = "@duo-agent"
DEFAULT_UNIT_URL_TEMPLATE = "http://{address}.units.internal:8080"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class GroupMatchPolicy(BaseModel):
    """How a project namespace is matched against configured group paths."""

    model_config = ConfigDict(frozen=True)

    case_sensitive: bool = False
    allow_prefix: bool = True


class ClassifierConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    trigger_token: str = DEFAULT_TRIGGER_TOKEN
    bot_handle_markers: tuple[str, ...] = ("bot",)
    bot_handles: frozenset[str] = frozenset({"ghost"})


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_secret: str = Field(min_length=16)
    admin_token: str = Field(min_length=16)
    db_path: str = "data/gateway.db"
    platform: str = "gitlab"
    unit_url_template: str = DEFAULT_UNIT_URL_TEMPLATE
    dispatch_timeout_seconds: float = Field(default=900.0, gt=0)
    inflight_ttl_seconds: int = Field(default=900, gt=0)
    classifier: ClassifierConfig = ClassifierConfig()
    group_match: GroupMatchPolicy = GroupMatchPolicy()
    mirror_errors: bool = True
    audit_log_path: str | None = None

    @classmethod
    def from_env(cls) -> GatewaySettings:
        """Build settings from ``GATEWAY_*`` environment variables."""
        return cls(
            app_secret=os.environ["GATEWAY_APP_SECRET"],
            admin_token=os.environ["GATEWAY_ADMIN_TOKEN"],
            db_path=os.environ.get("GATEWAY_DB_PATH", "data/gateway.db"),
            platform=os.environ.get("GATEWAY_PLATFORM", "gitlab"),
            unit_url_template=os.environ.get(
                "GATEWAY_UNIT_URL_TEMPLATE", DEFAULT_UNIT_URL_TEMPLATE,
            ),
            dispatch_timeout_seconds=float(
                os.environ.get("GATEWAY_DISPATCH_TIMEOUT_SECONDS", "900"),
            ),
            inflight_ttl_seconds=int(os.environ.get("GATEWAY_INFLIGHT_TTL_SECONDS", "900")),
            classifier=ClassifierConfig(
                trigger_token=os.environ.get("GATEWAY_TRIGGER_TOKEN", DEFAULT_TRIGGER_TOKEN),
            ),
            group_match=GroupMatchPolicy(
                case_sensitive=_env_bool("GATEWAY_GROUP_MATCH_CASE_SENSITIVE", False),
                allow_prefix=_env_bool("GATEWAY_GROUP_MATCH_PREFIX", True),
            ),
            mirror_errors=_env_bool("GATEWAY_MIRROR_ERRORS", True),
            audit_log_path=os.environ.get("GATEWAY_AUDIT_LOG_PATH"),
        )


class UnitSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    agent_command: tuple[str, ...] = ("claude", "--print")
    agent_timeout_seconds: float = Field(default=840.0, gt=0)
    workspace_root: str = "/tmp/workspaces"  # noqa: S108
    clone_repository: bool = True

    @classmethod
    def from_env(cls) -> UnitSettings:
        command = os.environ.get("UNIT_AGENT_COMMAND")
        return cls(
            host=os.environ.get("UNIT_HOST", "0.0.0.0"),  # noqa: S104
            port=int(os.environ.get("PORT", "8080")),
            agent_command=tuple(shlex.split(command)) if command else ("claude", "--print"),
            agent_timeout_seconds=float(os.environ.get("UNIT_AGENT_TIMEOUT_SECONDS", "840")),
            workspace_root=os.environ.get("UNIT_WORKSPACE_ROOT", "/tmp/workspaces"),  # noqa: S108
            clone_repository=_env_bool("UNIT_CLONE_REPOSITORY", True),
        )
