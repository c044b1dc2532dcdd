"""Create or update Temporal schedules for value store refreshes.

Every value store with a `schedule` (cron expression) gets one Temporal
schedule, id "refresh-<store>", that starts RefreshValueStoreWorkflow.
Schedules of stores that no longer have a cron expression are deleted.

Usage:
    python scripts/schedule_refreshes.py [--dry-run]
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleSpec,
    ScheduleUpdate,
)
from temporalio.service import RPCError, RPCStatusCode

from temporal_client import get_temporal_client
from core.observability.logging import get_logger
from value_resolver.models import ValueStoreConfig
from value_resolver.service import build_service
from workflows.refresh_workflow import RefreshValueStoreWorkflow, TASK_QUEUE
from activities.refresh import RefreshStoreInput


logger = get_logger(__name__)

SCHEDULE_PREFIX = "refresh-"


def schedule_id(store_name: str) -> str:
    return f"{SCHEDULE_PREFIX}{store_name}"


def build_schedule(config: ValueStoreConfig) -> Schedule:
    """Temporal schedule that refreshes `config` on its cron expression."""
    return Schedule(
        action=ScheduleActionStartWorkflow(
            RefreshValueStoreWorkflow.run,
            RefreshStoreInput(store_name=config.name),
            id=f"refresh-{config.name}",
            task_queue=TASK_QUEUE,
        ),
        spec=ScheduleSpec(cron_expressions=[config.schedule]),
    )


async def upsert_schedule(client: Client, config: ValueStoreConfig) -> str:
    """Create the schedule, or replace the existing one's definition.

    Returns:
        "created" or "updated"
    """
    schedule = build_schedule(config)
    try:
        await client.create_schedule(schedule_id(config.name), schedule)
        return "created"
    except ScheduleAlreadyRunningError:
        handle = client.get_schedule_handle(schedule_id(config.name))
        await handle.update(lambda _: ScheduleUpdate(schedule=schedule))
        return "updated"


async def delete_schedule(client: Client, store_name: str) -> bool:
    """Delete a store's schedule; False if it did not exist."""
    try:
        await client.get_schedule_handle(schedule_id(store_name)).delete()
        return True
    except RPCError as e:
        if e.status == RPCStatusCode.NOT_FOUND:
            return False
        raise


async def sync_schedules(dry_run: bool = False) -> List[str]:
    """Bring Temporal schedules in line with the configured stores."""
    service = build_service()
    configs = service.registry.list()
    actions = []

    client = None if dry_run else await get_temporal_client()
    for config in configs:
        if config.schedule:
            if dry_run:
                actions.append(f"would schedule {config.name}: {config.schedule}")
                continue
            outcome = await upsert_schedule(client, config)
            actions.append(f"{outcome} {schedule_id(config.name)}: {config.schedule}")
        elif not dry_run and await delete_schedule(client, config.name):
            actions.append(f"deleted {schedule_id(config.name)}")

    for action in actions:
        logger.info(action)
    return actions


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Sync value store refresh schedules to Temporal")
    parser.add_argument("--dry-run", action="store_true", help="Only print what would change")
    args = parser.parse_args()

    try:
        actions = asyncio.run(sync_schedules(dry_run=args.dry_run))
        for action in actions:
            print(action)
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
