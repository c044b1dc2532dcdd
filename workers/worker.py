"""Worker for the value resolver.

Polls the value-resolver task queue and runs store refreshes, both for
scheduled refreshes and for workflows started on demand.

Run with --queue <name> to poll a different queue.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from core.observability.logging import configure_logging, get_logger
from value_resolver.config import load_settings
from workflows.refresh_workflow import RefreshValueStoreWorkflow, TASK_QUEUE
from activities.refresh import refresh_value_store


logger = get_logger(__name__)

WORKFLOWS = [RefreshValueStoreWorkflow]
ACTIVITIES = [refresh_value_store]


async def run_worker(queue: str = TASK_QUEUE):
    """Start a worker listening on the task queue.

    Args:
        queue: Task queue to poll

    Raises:
        Exception: If connection to Temporal fails
    """
    client = None

    try:
        client = await get_temporal_client()
        logger.info(f"Connected to Temporal: {client.namespace}")

        worker = Worker(
            client,
            task_queue=queue,
            workflows=WORKFLOWS,
            activities=ACTIVITIES,
        )
        logger.info(f"Worker created for queue '{queue}':")
        logger.info(f"  - Workflows: {len(WORKFLOWS)}")
        logger.info(f"  - Activities: {len(ACTIVITIES)}")

        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Value Resolver Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=TASK_QUEUE,
        help=f"Task queue to poll (default: {TASK_QUEUE})"
    )

    args = parser.parse_args()
    settings = load_settings()
    configure_logging(
        level=getattr(logging, settings.log_level, logging.INFO),
        json_format=settings.log_json,
    )
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
