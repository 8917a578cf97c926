"""
Fixtures and helpers for end-to-end JTD scenarios.

Provides:
- a worker pass over the Main Queue (same code path as the Celery task)
- zero-delay automatic retries
- DB assertions on job status, history trail and queue placement
"""
import pytest
from unittest.mock import patch

from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.config import settings
from jtd_pipeline.db.models import JtdStatus, QueueName
from jtd_pipeline.domain.services.jtd_service import JtdService
from jtd_pipeline.domain.services.queue_service import QueueService
from jtd_pipeline.state_machine.manager import JtdStateManager
from jtd_pipeline.workers.tasks import process_queue_batch


@pytest.fixture
def fast_retries():
    """Automatic retries become visible immediately"""
    with patch.object(settings, "JTD_RETRY_BASE_SECONDS", 0):
        yield


@pytest.fixture
def run_worker(db_session: AsyncSession):
    """One worker pass over the Main Queue"""
    async def _run(batch_size: int = 10, worker_name: str = "scenario-worker") -> list[dict]:
        return await process_queue_batch(db_session, batch_size=batch_size, worker_name=worker_name)

    return _run


@pytest.fixture
def assert_status(db_session: AsyncSession):
    async def _assert(jtd_id: str, expected: JtdStatus):
        job = await JtdStateManager(db_session).get_job(jtd_id)
        assert job.current_status == expected, (
            f"expected {expected.value}, got {job.current_status.value}"
        )
        return job

    return _assert


@pytest.fixture
def history_trail(db_session: AsyncSession):
    """to_status of every history row, oldest first"""
    async def _trail(jtd_id: str) -> list[str]:
        history = await JtdService(db_session).get_history(jtd_id)
        return [entry.to_status for entry in history]

    return _trail


@pytest.fixture
def assert_queue_placement(db_session: AsyncSession):
    """Job has an entry in exactly the queues named (possibly none)"""
    async def _assert(jtd_id: str, *queues: QueueName) -> None:
        queue = QueueService(db_session)
        for queue_name in QueueName:
            message = await queue.get_job_message(queue_name, jtd_id)
            if queue_name in queues:
                assert message is not None, f"{jtd_id} missing from {queue_name.value}"
            else:
                assert message is None, f"{jtd_id} unexpectedly in {queue_name.value}"

    return _assert
