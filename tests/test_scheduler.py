import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from models.execution import ExecutionStatus, WorkflowExecution
from scheduler.scheduler_loop import SchedulerLoop
from conftest import OWNER


@pytest.mark.asyncio
async def test_scheduler_loop_sweeps_until_stopped():
    engine = MagicMock()
    engine.resume_due = AsyncMock(return_value=0)
    loop = SchedulerLoop(engine, interval_seconds=0.01)

    task = asyncio.create_task(loop.start())
    await asyncio.sleep(0.05)
    loop.stop()
    await asyncio.wait_for(task, timeout=1)

    assert engine.resume_due.await_count >= 2


@pytest.mark.asyncio
async def test_scheduler_survives_failing_tick():
    engine = MagicMock()
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db locked")
        return 0

    engine.resume_due = AsyncMock(side_effect=flaky)
    loop = SchedulerLoop(engine, interval_seconds=0.01)

    task = asyncio.create_task(loop.start())
    await asyncio.sleep(0.05)
    loop.stop()
    await asyncio.wait_for(task, timeout=1)

    assert engine.resume_due.await_count >= 2


@pytest.mark.asyncio
async def test_resume_due_starts_orphaned_execution(services, make_workflow, sender):
    workflow = make_workflow(actions=[{"type": "notify", "config": {"to": "ops@example.com", "template": "x"}}])
    services.execution_store.create(WorkflowExecution(
        id="orphan", workflow_id=workflow.id, owner_id=OWNER, actions=workflow.actions,
    ))

    assert await services.scheduler._tick() == 1
    final = await services.engine.wait("orphan")

    assert final.status == ExecutionStatus.COMPLETED
    assert len(sender.sent) == 1
