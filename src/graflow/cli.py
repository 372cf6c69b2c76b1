"""``graflow-worker`` entry point: run a remote worker against a shared backend."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket

from graflow.executor.worker import Worker, WorkerHandle
from graflow.storage.base import StorageError
from graflow.storage.factory import BackendConfig, create_channel, create_queue

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    env = BackendConfig.from_env()
    parser = argparse.ArgumentParser(
        prog="graflow-worker",
        description="Execute distributed group branches from a shared graflow queue.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Two workers on the same Redis namespace
  graflow-worker --worker-id w1 --redis-url redis://cache:6379 --namespace billing
  graflow-worker --worker-id w2 --redis-url redis://cache:6379 --namespace billing

Handlers must be importable by the worker (module-level callables).
        """,
    )
    parser.add_argument(
        "--worker-id",
        default=f"{socket.gethostname()}-{os.getpid()}",
        help="Unique worker identifier (default: <hostname>-<pid>)",
    )
    parser.add_argument(
        "--redis-url",
        default=env.redis_url,
        help=f"Redis connection URL (default: {env.redis_url})",
    )
    parser.add_argument(
        "--namespace",
        default=env.namespace,
        help=f"Key prefix shared with producers (default: {env.namespace})",
    )
    parser.add_argument("--queue", default="default", help="Queue name (default: default)")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=1.0,
        help="Seconds between polls of an empty queue (default: 1.0)",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        default=30.0,
        help="Seconds to let the in-flight task finish on shutdown (default: 30)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


async def wait_for_stop(handle: WorkerHandle, stop: asyncio.Event) -> bool:
    """Wait for a shutdown signal or for the worker loop to end.

    Returns:
        True if the loop ended by itself (no signal was received)
    """
    signalled = asyncio.create_task(stop.wait())
    finished = asyncio.create_task(handle.wait())
    done, pending = await asyncio.wait({signalled, finished}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    return finished in done and signalled not in done


async def run_worker(args: argparse.Namespace) -> int:
    config = BackendConfig(backend="redis", namespace=args.namespace, redis_url=args.redis_url)
    worker = (
        Worker(
            create_queue(config, name=args.queue),
            lambda session_id: create_channel(config, session_id),
            args.worker_id,
        )
        .with_poll_interval(args.poll_interval)
        .with_grace_period(args.grace_period)
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    handle = await worker.start()
    logger.info(
        f"Worker {args.worker_id} polling {args.namespace}:queue:{args.queue}. "
        "Press Ctrl+C to stop gracefully."
    )
    if await wait_for_stop(handle, stop):
        logger.error(f"Worker {args.worker_id} loop ended unexpectedly: {handle.exception()!r}")
        await worker.close()
        return 1
    logger.info("Shutdown signal received")
    await handle.shutdown()
    logger.info(f"Worker {args.worker_id} metrics: {handle.metrics.to_dict()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        return asyncio.run(run_worker(args))
    except StorageError as e:
        logger.error(f"Cannot reach the shared backend: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
