"""Click CLI for running the gateway and managing stored credentials."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from agent_gateway.audit.logger import AuditLogger, validate_audit_chain
from agent_gateway.credentials import (
    AgentCredential,
    AgentKeyStore,
    CredentialCipher,
    CredentialDB,
    CredentialScope,
    CredentialStore,
    GroupCredential,
    OwnerKey,
    ProjectCredential,
)
from agent_gateway.credentials.models import DEFAULT_BASE_URL


def _redacted(record: ProjectCredential | GroupCredential) -> dict[str, object]:
    data = record.model_dump(mode="json", exclude={"token", "webhook_secret"})
    data["token_set"] = bool(record.token)
    data["webhook_secret_set"] = bool(record.webhook_secret)
    return data


@click.group()
@click.option("--db", default="data/gateway.db", envvar="GATEWAY_DB_PATH", help="Credential database path.")
@click.option("--app-secret", default=None, envvar="GATEWAY_APP_SECRET", help="Application secret used to derive the encryption key.")
@click.option("--audit-log", default=None, envvar="GATEWAY_AUDIT_LOG_PATH", help="Audit log file path.")
@click.option("--log-level", default="INFO", envvar="LOG_LEVEL", help="Logging level.")
@click.pass_context
def cli(
    ctx: click.Context, db: str, app_secret: str | None, audit_log: str | None, log_level: str,
) -> None:
    """GitLab webhook gateway for automated coding agents."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["app_secret"] = app_secret
    ctx.obj["audit_log"] = audit_log


def _open_stores(ctx: click.Context) -> tuple[CredentialStore, AgentKeyStore]:
    app_secret = ctx.obj["app_secret"]
    if not app_secret:
        raise click.UsageError("An application secret is required (--app-secret or GATEWAY_APP_SECRET).")
    audit_log = ctx.obj["audit_log"]
    audit_logger = AuditLogger.from_env(audit_log) if audit_log else None
    db = CredentialDB(ctx.obj["db"])
    ctx.call_on_close(db.close)
    cipher = CredentialCipher(app_secret)
    return CredentialStore(db, cipher, audit_logger=audit_logger), AgentKeyStore(db, cipher, audit_logger)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")  # noqa: S104
@click.option("--port", default=8000, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the webhook gateway (configuration from GATEWAY_* variables)."""
    import uvicorn

    uvicorn.run(
        "agent_gateway.proxy.app:create_app_from_env",
        factory=True, host=host, port=port, log_config=None,
    )


@cli.command()
@click.option("--factory", default=None, help="Application factory as 'module:attribute'.")
def unit(factory: str | None) -> None:
    """Run an execution unit behind the fast-start bootstrap."""
    from agent_gateway.unit.bootstrap import main

    sys.exit(main([factory] if factory else []))


@cli.group("credentials")
def credentials_group() -> None:
    """Manage encrypted project and group credentials."""


@credentials_group.command("set-project")
@click.argument("project_id")
@click.option("--token", required=True, help="GitLab access token.")
@click.option("--webhook-secret", required=True, help="Secret GitLab sends in X-Gitlab-Token.")
@click.option("--url", "base_url", default=DEFAULT_BASE_URL, help="GitLab base URL.")
@click.option("--namespace", default=None, help="Project path with namespace.")
@click.pass_context
def set_project(
    ctx: click.Context,
    project_id: str,
    token: str,
    webhook_secret: str,
    base_url: str,
    namespace: str | None,
) -> None:
    """Store credentials for one project."""
    store, _ = _open_stores(ctx)
    record = ProjectCredential(
        project_id=project_id,
        base_url=base_url,
        token=token,
        webhook_secret=webhook_secret,
        project_namespace=namespace,
    )
    store.put(record.owner_key, record)
    click.echo(f"Stored credentials for project {project_id}")


@credentials_group.command("set-group")
@click.argument("group_id")
@click.option("--path", "group_path", required=True, help="Group full path, e.g. 'acme/platform'.")
@click.option("--token", required=True, help="GitLab access token.")
@click.option("--webhook-secret", required=True, help="Secret GitLab sends in X-Gitlab-Token.")
@click.option("--url", "base_url", default=DEFAULT_BASE_URL, help="GitLab base URL.")
@click.option("--name", "group_name", default=None, help="Display name of the group.")
@click.pass_context
def set_group(
    ctx: click.Context,
    group_id: str,
    group_path: str,
    token: str,
    webhook_secret: str,
    base_url: str,
    group_name: str | None,
) -> None:
    """Store credentials for a group, used by every project under its path."""
    store, _ = _open_stores(ctx)
    record = GroupCredential(
        group_id=group_id,
        group_path=group_path,
        group_name=group_name,
        base_url=base_url,
        token=token,
        webhook_secret=webhook_secret,
    )
    store.put(record.owner_key, record)
    click.echo(f"Stored credentials for group {group_id} ({group_path})")


@credentials_group.command("show")
@click.argument("scope", type=click.Choice(["project", "group"]))
@click.argument("owner_id")
@click.pass_context
def show(ctx: click.Context, scope: str, owner_id: str) -> None:
    """Show a stored record with its secrets redacted."""
    store, _ = _open_stores(ctx)
    record = store.get(OwnerKey(scope=CredentialScope(scope), owner_id=owner_id))
    if record is None:
        raise click.ClickException(f"No {scope} credentials for {owner_id}")
    click.echo(json.dumps(_redacted(record), indent=2))


@credentials_group.command("list")
@click.pass_context
def list_credentials(ctx: click.Context) -> None:
    """List configured projects and groups."""
    store, _ = _open_stores(ctx)
    output = {
        "projects": [key.owner_id for key in store.list_keys(CredentialScope.PROJECT)],
        "groups": store.group_paths(),
    }
    click.echo(json.dumps(output, indent=2))


@credentials_group.command("delete")
@click.argument("scope", type=click.Choice(["project", "group"]))
@click.argument("owner_id")
@click.pass_context
def delete(ctx: click.Context, scope: str, owner_id: str) -> None:
    """Delete a stored record."""
    store, _ = _open_stores(ctx)
    if not store.delete(OwnerKey(scope=CredentialScope(scope), owner_id=owner_id)):
        raise click.ClickException(f"No {scope} credentials for {owner_id}")
    click.echo(f"Deleted {scope} credentials for {owner_id}")


@cli.group("agent-key")
def agent_key_group() -> None:
    """Manage the coding agent's API key."""


@agent_key_group.command("set")
@click.option("--api-key", prompt=True, hide_input=True, help="Agent API key.")
@click.pass_context
def set_agent_key(ctx: click.Context, api_key: str) -> None:
    """Store the agent API key."""
    _, agent_keys = _open_stores(ctx)
    agent_keys.put(AgentCredential(api_key=api_key))
    click.echo("Stored agent API key")


@cli.group("audit")
def audit_group() -> None:
    """Inspect the audit log."""


@audit_group.command("verify")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False))
def verify(log_path: str) -> None:
    """Verify the hash chain of an audit log file."""
    result = validate_audit_chain(Path(log_path))
    if not result.valid:
        raise click.ClickException(f"Audit chain broken at line {result.broken_at_line}")
    click.echo("Audit chain valid")
