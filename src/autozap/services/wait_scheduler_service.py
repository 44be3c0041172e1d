"""
Wait Scheduler Service
Background service that resumes executions paused on wait nodes once their timer elapses.
"""
import asyncio
import traceback
from typing import TYPE_CHECKING

# Utils
from autozap.utils.log_utils import LogUtil

# Database
from autozap.database.app_db import AppDB

# Models
from autozap.models.wait_data import WorkflowWait

if TYPE_CHECKING:
    from autozap.services.workflow_executor_service import WorkflowExecutorService


class WaitSchedulerService:
    """
    Background service that polls due wait records and hands them back to the executor.
    """

    def __init__(
        self,
        log_util: LogUtil,
        app_db: AppDB,
        workflow_executor_service: "WorkflowExecutorService",
        check_interval_seconds: int = 5
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.workflow_executor_service = workflow_executor_service
        self.check_interval_seconds = check_interval_seconds
        self._running = False
        self._task = None

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="WaitSchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="WaitSchedulerService",
            message=f"Wait scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="WaitSchedulerService",
            message="Wait scheduler stopped"
        )

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.process_due_waits()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="WaitSchedulerService",
                    message=f"Error in scheduler loop: {str(e)}\n{traceback.format_exc()}"
                )
            await asyncio.sleep(self.check_interval_seconds)

    async def process_due_waits(self) -> int:
        """
        Resume every execution whose wait has elapsed.

        A failing wait is logged and the remaining waits still run.

        Returns:
            Number of waits marked as processed
        """
        due_waits = await self.app_db.get_due_waits()
        if not due_waits:
            return 0

        self.log_util.info(
            service_name="WaitSchedulerService",
            message=f"Found {len(due_waits)} due wait(s) to process"
        )

        processed = 0
        for wait in due_waits:
            try:
                # Marked first so a slow resume is not picked up again by the next tick
                await self.app_db.mark_wait_processed(wait.id)
                result = await self.workflow_executor_service.resume_after_wait(wait)
                processed += 1
                self.log_util.info(
                    service_name="WaitSchedulerService",
                    message=f"Wait {wait.id} for {wait.contact_number} resumed: {result.get('status')}"
                )
            except Exception as e:
                self.log_util.error(
                    service_name="WaitSchedulerService",
                    message=f"Error processing wait {wait.id}: {str(e)}\n{traceback.format_exc()}"
                )
                await self._drop_stranded_execution(wait)
        return processed

    async def _drop_stranded_execution(self, wait: WorkflowWait):
        """
        Delete the execution still paused on a wait that failed to resume.

        The wait is already processed, so the execution would otherwise never move again.
        """
        try:
            execution = await self.app_db.get_execution(wait.instance_id, wait.contact_number)
            if execution is None:
                return
            if execution.workflow_id != wait.workflow_id or execution.current_node_id != wait.node_id:
                return
            await self.app_db.delete_execution(wait.instance_id, wait.contact_number)
            self.log_util.warning(
                service_name="WaitSchedulerService",
                message=f"Execution of {wait.contact_number} on wait {wait.id} dropped after a failed resume"
            )
        except Exception as e:
            self.log_util.error(
                service_name="WaitSchedulerService",
                message=f"Error dropping execution for wait {wait.id}: {str(e)}"
            )
