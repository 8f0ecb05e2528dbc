"""Resource lifecycle CLI (lifecycle).

Usage:
    lifecycle precheck resource_group security_contact
    lifecycle apply manifest.yaml
    lifecycle import resource_group /subscriptions/.../resourceGroups/rg1
    lifecycle verify manifest.yaml rg [--destroyed]
    lifecycle destroy manifest.yaml rg
    lifecycle sweep --prefix lcr-test

Results are printed to stdout as JSON; logs go to stderr.

Exit codes:
    0: Success (skips allowed)
    1: Failure
    3: Everything was skipped (kind unavailable in this subscription)
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from azure.mgmt.resourcegraph import ResourceGraphClient

from .config import Config, ConfigurationError
from .credential import build_clients
from .dependency import DependencyError
from .errors import PreconditionSkipped, ReconcileError
from .kinds.registry import UnknownKindError
from .main import (
    EXIT_ALL_SKIPPED,
    EXIT_FAILED,
    apply_manifest,
    build_reconciler,
    destroy_entry,
    exit_code,
    setup_logging,
)
from .manifest import Manifest, ManifestLoadError, load_manifest
from .orchestrator import DestroyReport
from .precheck import PrecheckStatus
from .reconciler import ReconcileOutcome, Reconciler
from .sweeper import Sweeper


@dataclass
class CliContext:
    """Objects shared by all commands.

    Tests pass a prepared context through CliRunner.invoke(obj=...).
    """

    config: Config
    reconciler: Reconciler
    graph_client: ResourceGraphClient | None = None


def get_context(ctx: click.Context) -> CliContext:
    """Return the shared context, building it from the environment on first use."""
    if isinstance(ctx.obj, CliContext):
        return ctx.obj

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_format, config.log_level)
    client, graph_client = build_clients(config)
    ctx.obj = CliContext(
        config=config,
        reconciler=build_reconciler(config, client),
        graph_client=graph_client,
    )
    return ctx.obj


def read_manifest(path: Path) -> Manifest:
    try:
        manifest = load_manifest(path)
        manifest.graph()
    except (ManifestLoadError, DependencyError) as e:
        raise click.ClickException(str(e)) from e
    return manifest


def emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def outcome_to_dict(outcome: ReconcileOutcome) -> dict[str, Any]:
    result: dict[str, Any] = {
        "name": outcome.request.label,
        "kind": outcome.request.kind,
        "status": outcome.status.value,
        "duration_seconds": round(outcome.duration_seconds, 2),
    }
    if outcome.instance is not None and outcome.instance.id:
        result["id"] = outcome.instance.id
    if outcome.reason:
        result["reason"] = outcome.reason
    return result


def report_to_dict(report: DestroyReport) -> dict[str, Any]:
    return {
        "target": report.target,
        "steps": [
            {
                "key": step.key,
                "kind": step.kind,
                "id": step.resource_id,
                "already_gone": step.already_gone,
                "residual": step.residual,
            }
            for step in report.steps
        ],
    }


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="lifecycle")
def cli() -> None:
    """Resource lifecycle reconciler (lifecycle).

    Creates, converges, verifies and destroys Azure resources declared in a
    manifest.

    \b
    Quick Start:
        lifecycle precheck resource_group   # Is the kind usable here?
        lifecycle apply manifest.yaml       # Converge every entry
        lifecycle destroy manifest.yaml rg  # Tear an entry down
    """
    pass


@cli.command()
@click.argument("kinds", nargs=-1, required=True)
@click.pass_context
def precheck(ctx: click.Context, kinds: tuple[str, ...]) -> None:
    """Check that each KIND can be managed in this subscription."""
    context = get_context(ctx)
    reconciler = context.reconciler

    async def run() -> dict[str, dict[str, str]]:
        results = {}
        for name in kinds:
            outcome = await reconciler.gate.check(reconciler.registry.get(name))
            results[name] = {"status": outcome.status.value, "reason": outcome.reason}
        return results

    try:
        results = asyncio.run(run())
    except UnknownKindError as e:
        raise click.ClickException(str(e)) from e

    emit(results)
    statuses = [r["status"] for r in results.values()]
    if PrecheckStatus.FAIL.value in statuses:
        ctx.exit(EXIT_FAILED)
    if all(s == PrecheckStatus.SKIP.value for s in statuses):
        ctx.exit(EXIT_ALL_SKIPPED)


@cli.command()
@click.argument("manifest_path", type=click.Path(path_type=Path))
@click.pass_context
def apply(ctx: click.Context, manifest_path: Path) -> None:
    """Converge every entry of MANIFEST_PATH to its desired state."""
    manifest = read_manifest(manifest_path)
    context = get_context(ctx)

    outcomes = asyncio.run(apply_manifest(context.reconciler, manifest))
    emit([outcome_to_dict(o) for o in outcomes])
    ctx.exit(exit_code(outcomes))


@cli.command(name="import")
@click.argument("kind")
@click.argument("resource_id")
@click.pass_context
def import_(ctx: click.Context, kind: str, resource_id: str) -> None:
    """Adopt an existing resource and print its desired state."""
    context = get_context(ctx)
    try:
        instance = asyncio.run(context.reconciler.import_by_id(kind, resource_id))
    except PreconditionSkipped as e:
        emit({"kind": kind, "status": "skipped", "reason": e.reason})
        ctx.exit(EXIT_ALL_SKIPPED)
    except (ReconcileError, UnknownKindError) as e:
        raise click.ClickException(str(e)) from e

    emit(
        {
            "kind": instance.kind,
            "id": instance.id,
            "status": instance.status.value,
            "desired": instance.desired,
        }
    )


@cli.command()
@click.argument("manifest_path", type=click.Path(path_type=Path))
@click.argument("name")
@click.option("--destroyed", is_flag=True, help="Verify the entry is destroyed instead")
@click.pass_context
def verify(ctx: click.Context, manifest_path: Path, name: str, destroyed: bool) -> None:
    """Verify that entry NAME exists and matches (or is destroyed)."""
    manifest = read_manifest(manifest_path)
    try:
        entry = manifest.get(name)
    except KeyError as e:
        raise click.ClickException(f"No manifest entry named '{name}'") from e

    context = get_context(ctx)
    reconciler = context.reconciler
    try:
        resource_id = entry.id or reconciler.registry.get(entry.kind).derive_id(entry.desired)
    except UnknownKindError as e:
        raise click.ClickException(str(e)) from e
    if not resource_id:
        raise click.ClickException(f"Entry '{name}' has no id and none can be derived")

    try:
        if destroyed:
            verification = asyncio.run(reconciler.verify_destroyed(entry.kind, resource_id))
            emit(
                {
                    "name": name,
                    "id": resource_id,
                    "status": verification.status.value,
                    "detail": verification.detail,
                }
            )
            ok = verification.destroyed
        else:
            result = asyncio.run(reconciler.verify_exists(entry.kind, resource_id, entry.desired))
            emit(
                {
                    "name": name,
                    "id": resource_id,
                    "status": result.status.value,
                    "drift": result.drift.summary() if result.drift else "",
                }
            )
            ok = result.matches
    except PreconditionSkipped as e:
        emit({"name": name, "status": "skipped", "reason": e.reason})
        ctx.exit(EXIT_ALL_SKIPPED)
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    if not ok:
        ctx.exit(EXIT_FAILED)


@cli.command()
@click.argument("manifest_path", type=click.Path(path_type=Path))
@click.argument("name")
@click.pass_context
def destroy(ctx: click.Context, manifest_path: Path, name: str) -> None:
    """Destroy entry NAME and every entry that depends on it."""
    manifest = read_manifest(manifest_path)
    context = get_context(ctx)
    try:
        report = asyncio.run(destroy_entry(context.reconciler, manifest, name))
    except KeyError as e:
        raise click.ClickException(f"No manifest entry named '{name}'") from e
    except PreconditionSkipped as e:
        emit({"name": name, "status": "skipped", "reason": e.reason})
        ctx.exit(EXIT_ALL_SKIPPED)
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    emit(report_to_dict(report))


@cli.command()
@click.option("--prefix", "-p", default=None, help="Name prefix (default: LIFECYCLE_RESOURCE_PREFIX)")
@click.pass_context
def sweep(ctx: click.Context, prefix: str | None) -> None:
    """Destroy leftover test resource groups whose name starts with a prefix."""
    context = get_context(ctx)
    if context.graph_client is None:
        raise click.ClickException("Sweeping needs a Resource Graph client")

    sweeper = Sweeper(context.graph_client, context.reconciler, context.config)
    try:
        result = asyncio.run(sweeper.sweep(prefix))
    except (ValueError, ReconcileError) as e:
        raise click.ClickException(str(e)) from e

    emit({"swept": result.swept, "failed": result.failed, "skipped": result.skipped})
    if not result.success:
        ctx.exit(EXIT_FAILED)
    if result.skipped and not result.swept:
        ctx.exit(EXIT_ALL_SKIPPED)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
