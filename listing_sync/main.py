from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import uuid

import uvicorn

from listing_sync.api.http_app import build_app
from listing_sync.domain.errors import QueueTransportError
from listing_sync.logging_setup import configure_logging
from listing_sync.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from listing_sync.services.bootstrap import RuntimeContainer, build_runtime_container
from listing_sync.workers.runner import run_until_stopped


def _default_port(role: str) -> int:
    if role == "api":
        return 8000
    return 8100


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Listing crawl pipeline entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--run-id", default=None, help="Worker/run identifier (default: random)")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run as a long-lived service behind the HTTP health/stats surface",
    )
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    return parser.parse_args(argv)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_batch(
    container: RuntimeContainer,
    role: RuntimeRole,
    run_id: str,
    *,
    stop_event: asyncio.Event | None = None,
) -> int:
    """Run one role to completion: a discovery pass, or a consumer until its queue stays empty."""
    logger = logging.getLogger("runtime")
    context = {"role": role.name, "service": role.name, "run_id": run_id}
    if stop_event is None:
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)

    try:
        await container.startup()
        if container.coordinator is not None:
            container.coordinator.stop_event = stop_event
            report = await container.coordinator.run_pass()
            if report.partitions_total and len(report.partitions_failed) == report.partitions_total:
                logger.error("every partition failed", extra=context)
                return 1
            return 0

        if container.consumer is not None:
            await run_until_stopped(
                consumer=container.consumer,
                run_id=run_id,
                stop_event=stop_event,
                settings=container.settings.runtime,
                logger=logger,
                claim_stale_after=container.settings.queue.claim_stale_after,
            )
        return 0
    except QueueTransportError as exc:
        logger.error("work queue unavailable", extra={**context, "error": str(exc)})
        return 1
    finally:
        await container.shutdown()


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    configure_logging()
    run_id = args.run_id or str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id},
        )
        return 0

    container = build_runtime_container(role, worker_id=args.run_id)
    if role.name == "api" or args.serve:
        app = build_app(role=role.name, run_id=run_id, container=container)
        port = args.port if args.port is not None else _default_port(role.name)
        uvicorn.run(app, host=args.host, port=port, log_level="warning")
        return 0

    return asyncio.run(run_batch(container, role, run_id))


if __name__ == "__main__":
    raise SystemExit(run())
