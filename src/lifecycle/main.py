"""Main entry point for one-shot manifest runs.

Reads the configuration and the manifest path from the environment,
applies the manifest and exits. Intended for pipelines; interactive use
goes through the CLI (lifecycle.cli).

Environment Variables:
    LIFECYCLE_MANIFEST: Path to the manifest to apply (required)
    LIFECYCLE_DESTROY: Name of a manifest entry to destroy instead of applying

Exit codes:
    0: Every instance succeeded (skips allowed)
    1: Configuration error or at least one instance failed
    3: Every instance was skipped
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from azure.mgmt.resource import ResourceManagementClient

from .config import Config, ConfigurationError
from .credential import build_clients
from .dependency import DependencyError
from .errors import PreconditionSkipped, ReconcileError
from .kinds.registry import KindRegistry
from .manifest import Manifest, ManifestLoadError, load_manifest
from .models import ResourceInstance
from .orchestrator import Dependent, DestroyReport
from .reconciler import OutcomeStatus, ReconcileOutcome, Reconciler

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ALL_SKIPPED = 3

# LogRecord attributes that are not structured extras
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: str = "INFO") -> None:
    """Configure logging on stderr, JSON for pipelines or plain text.

    Calling it again replaces the handler installed by the previous call.
    """
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.set_name("lifecycle")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "lifecycle":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(config: Config, client: ResourceManagementClient) -> Reconciler:
    """Create a reconciler with the built-in kinds around one ARM client."""
    registry = KindRegistry.builtin(
        client, config.subscription_id, default_location=config.location.lower()
    )
    return Reconciler(registry, config)


# =============================================================================
# Manifest operations
# =============================================================================


async def apply_manifest(
    reconciler: Reconciler,
    manifest: Manifest,
    *,
    cancel_event: asyncio.Event | None = None,
) -> list[ReconcileOutcome]:
    """Reconcile every manifest entry.

    Without declared dependencies all entries run concurrently. Otherwise
    entries run one after another in dependency order, and an entry whose
    dependency failed or was skipped is skipped.

    Returns:
        Outcomes in manifest order.
    """
    requests = [resource.to_request() for resource in manifest.resources]
    if not manifest.has_dependencies:
        return await reconciler.reconcile_many(requests, cancel_event=cancel_event)

    by_name = {request.name: request for request in requests}
    outcomes: dict[str, ReconcileOutcome] = {}
    for name in manifest.graph().creation_order():
        request = by_name[name]
        blocked = [
            dep
            for dep in manifest.get(name).depends_on
            if outcomes[dep].status != OutcomeStatus.SUCCEEDED
        ]
        if blocked:
            outcome = ReconcileOutcome(
                request=request,
                status=OutcomeStatus.SKIPPED,
                reason=f"dependency {blocked} did not succeed",
                end_time=datetime.now(UTC),
            )
        else:
            (outcome,) = await reconciler.reconcile_many([request], cancel_event=cancel_event)
        outcomes[name] = outcome

    return [outcomes[request.name] for request in requests]


async def destroy_entry(
    reconciler: Reconciler,
    manifest: Manifest,
    name: str,
    *,
    cancel_event: asyncio.Event | None = None,
) -> DestroyReport:
    """Destroy a manifest entry together with every entry depending on it.

    The remote ID of an entry is its declared id, or the one its kind
    derives from the desired state. An entry without either was never
    created and is reported as already gone.

    Raises:
        KeyError: No entry with that name.
        PreconditionSkipped / ReconcileError: See DestroyOrchestrator.
    """
    target = manifest.get(name)
    involved = {name} | manifest.graph().dependents_of(name)

    instances: dict[str, ResourceInstance] = {}
    for entry_name in sorted(involved):
        resource = manifest.get(entry_name)
        kind = reconciler.registry.get(resource.kind)
        resource_id = resource.id or kind.derive_id(resource.desired) or ""
        instances[entry_name] = reconciler.instance_for(
            resource.kind, resource_id, resource.desired
        )

    dependents = [
        Dependent(
            instances[entry_name],
            tuple(
                instances[dep] for dep in manifest.get(entry_name).depends_on if dep in instances
            ),
        )
        for entry_name in sorted(involved - {name})
    ]
    return await reconciler.destroy(
        instances[target.name], dependents, cancel_event=cancel_event
    )


def exit_code(outcomes: Sequence[ReconcileOutcome]) -> int:
    """Map outcomes to the process exit code."""
    if any(o.status == OutcomeStatus.FAILED for o in outcomes):
        return EXIT_FAILED
    if outcomes and all(o.status == OutcomeStatus.SKIPPED for o in outcomes):
        return EXIT_ALL_SKIPPED
    return EXIT_OK


# =============================================================================
# One-shot run
# =============================================================================


async def main() -> int:
    """Apply (or destroy from) the manifest named in the environment.

    Returns:
        Exit code.
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILED

    setup_logging(config.log_format, config.log_level)
    logger = logging.getLogger(__name__)

    manifest_path = os.environ.get("LIFECYCLE_MANIFEST", "")
    if not manifest_path:
        logger.error("LIFECYCLE_MANIFEST is required")
        return EXIT_FAILED

    try:
        manifest = load_manifest(Path(manifest_path))
        manifest.graph()
    except (ManifestLoadError, DependencyError) as e:
        logger.error("Manifest rejected", extra={"error": str(e), "path": manifest_path})
        return EXIT_FAILED

    client, _ = build_clients(config)
    reconciler = build_reconciler(config, client)

    # Signals abort any wait in progress
    cancel_event = asyncio.Event()
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    logger.info(
        "Starting lifecycle run",
        extra={
            "subscription_id": config.subscription_id,
            "manifest": manifest_path,
            "resources": len(manifest.resources),
        },
    )

    destroy_name = os.environ.get("LIFECYCLE_DESTROY", "")
    if destroy_name:
        try:
            report = await destroy_entry(
                reconciler, manifest, destroy_name, cancel_event=cancel_event
            )
        except KeyError:
            logger.error("Unknown manifest entry", extra={"entry": destroy_name})
            return EXIT_FAILED
        except PreconditionSkipped as e:
            logger.warning("Destroy skipped", extra={"reason": e.reason})
            return EXIT_ALL_SKIPPED
        except ReconcileError as e:
            logger.error("Destroy failed", extra={"error": str(e)})
            return EXIT_FAILED
        logger.info(
            "Destroy complete",
            extra={"target": report.target, "residuals": report.residuals},
        )
        return EXIT_OK

    outcomes = await apply_manifest(reconciler, manifest, cancel_event=cancel_event)
    code = exit_code(outcomes)
    logger.info(
        "Lifecycle run complete",
        extra={
            "succeeded": sum(o.status == OutcomeStatus.SUCCEEDED for o in outcomes),
            "skipped": sum(o.status == OutcomeStatus.SKIPPED for o in outcomes),
            "failed": sum(o.status == OutcomeStatus.FAILED for o in outcomes),
            "exit_code": code,
        },
    )
    return code


def run() -> None:
    """Entry point for one-shot runs."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
