"""
Value Store Refresh Workflow

Runs refresh_value_store for one store. Started on demand or by a Temporal
schedule created from the store's cron expression.
"""

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

# Import activities
with workflow.unsafe.imports_passed_through():
    from activities.refresh import (
        refresh_value_store,
        RefreshStoreInput,
        RefreshStoreOutput,
    )


TASK_QUEUE = "value-resolver"

REFRESH_RETRY_POLICY = RetryPolicy(
    maximum_attempts=5,
    initial_interval=timedelta(seconds=5),
    maximum_interval=timedelta(minutes=5),
    backoff_coefficient=2.0,
    # Bad configuration or a deleted store won't fix itself
    non_retryable_error_types=["ConfigError", "NotFoundError"],
)


@workflow.defn
class RefreshValueStoreWorkflow:
    """Refresh one value store."""

    @workflow.run
    async def run(self, input: RefreshStoreInput) -> RefreshStoreOutput:
        workflow.logger.info(f"Refreshing value store '{input.store_name}'")
        result = await workflow.execute_activity(
            refresh_value_store,
            input,
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=REFRESH_RETRY_POLICY,
        )
        workflow.logger.info(
            f"Value store '{result.store_name}' now at generation {result.generation} "
            f"({result.rows_loaded} rows)"
        )
        return result
