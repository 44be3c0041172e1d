from datetime import datetime, timedelta

from autozap.exceptions.app_exception import DBException
from autozap.models.execution_data import WorkflowExecution
from autozap.models.wait_data import WorkflowWait
from autozap.services.wait_scheduler_service import WaitSchedulerService

CONTACT = "5511987654321"


class FailingExecutor:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.resumed = []

    async def resume_after_wait(self, wait):
        if wait.contact_number in self.fail_for:
            raise DBException(message="Database temporarily unavailable", status_code=503)
        self.resumed.append(wait.id)
        return {"status": "success", "outcome": "ended"}


async def _paused(app_db, contact_number=CONTACT, node_id="w"):
    await app_db.save_execution(WorkflowExecution(
        instance_id="instance-1",
        contact_number=contact_number,
        workflow_id="workflow-1",
        current_node_id=node_id,
        status="waiting_timer"
    ))
    return await app_db.save_wait(WorkflowWait(
        instance_id="instance-1",
        contact_number=contact_number,
        workflow_id="workflow-1",
        node_id="w",
        duration=1,
        unit="seconds",
        wait_seconds=1,
        resume_at=datetime.utcnow() - timedelta(seconds=1)
    ))


async def test_failed_resume_drops_the_paused_execution(app_db, log_util):
    wait = await _paused(app_db)
    scheduler = WaitSchedulerService(log_util=log_util, app_db=app_db, workflow_executor_service=FailingExecutor([CONTACT]))

    assert await scheduler.process_due_waits() == 0

    assert app_db.waits[wait.id].processed is True
    assert await app_db.get_execution("instance-1", CONTACT) is None
    assert any("Error processing wait" in message for message in log_util.messages("error"))
    assert any("dropped after a failed resume" in message for message in log_util.messages("warning"))


async def test_failed_resume_keeps_an_execution_that_moved_on(app_db, log_util):
    await _paused(app_db, node_id="q")
    scheduler = WaitSchedulerService(log_util=log_util, app_db=app_db, workflow_executor_service=FailingExecutor([CONTACT]))

    await scheduler.process_due_waits()

    assert (await app_db.get_execution("instance-1", CONTACT)).current_node_id == "q"


async def test_one_failing_wait_does_not_block_the_others(app_db, log_util):
    await _paused(app_db)
    other = await _paused(app_db, contact_number="5511911112222")
    executor = FailingExecutor([CONTACT])
    scheduler = WaitSchedulerService(log_util=log_util, app_db=app_db, workflow_executor_service=executor)

    assert await scheduler.process_due_waits() == 1
    assert executor.resumed == [other.id]
    assert await app_db.get_due_waits() == []
