from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.domain.models import SyncCursor, WorkflowStep


async def get_cursor(session: AsyncSession, connector_id: str, resource_external_id: str) -> str | None:
    result = await session.execute(
        select(SyncCursor.cursor).where(
            SyncCursor.connector_id == connector_id,
            SyncCursor.resource_external_id == resource_external_id,
        )
    )
    return result.scalar_one_or_none()


async def set_cursor(session: AsyncSession, connector_id: str, resource_external_id: str, cursor: str) -> None:
    # Callers advance the cursor only after the batch it covers is ingested.
    result = await session.execute(
        select(SyncCursor).where(
            SyncCursor.connector_id == connector_id,
            SyncCursor.resource_external_id == resource_external_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        session.add(
            SyncCursor(
                connector_id=connector_id,
                resource_external_id=resource_external_id,
                cursor=cursor,
            )
        )
    elif _ts_value(cursor) > _ts_value(row.cursor):
        row.cursor = cursor
    await session.flush()


async def reset_cursors(session: AsyncSession, connector_id: str, resource_external_ids: list[str]) -> None:
    if not resource_external_ids:
        return
    await session.execute(
        delete(SyncCursor).where(
            SyncCursor.connector_id == connector_id,
            SyncCursor.resource_external_id.in_(resource_external_ids),
        )
    )


async def completed_steps(session: AsyncSession, workflow_id: str) -> set[str]:
    result = await session.execute(select(WorkflowStep.step_key).where(WorkflowStep.workflow_id == workflow_id))
    return set(result.scalars().all())


async def mark_step_completed(session: AsyncSession, *, workflow_id: str, connector_id: str, step_key: str) -> None:
    # Re-marking a completed step is a no-op so replays stay idempotent.
    result = await session.execute(
        select(WorkflowStep.id).where(
            WorkflowStep.workflow_id == workflow_id,
            WorkflowStep.step_key == step_key,
        )
    )
    if result.scalar_one_or_none() is not None:
        return
    session.add(WorkflowStep(workflow_id=workflow_id, connector_id=connector_id, step_key=step_key))
    await session.flush()


async def clear_workflow(session: AsyncSession, workflow_id: str) -> None:
    await session.execute(delete(WorkflowStep).where(WorkflowStep.workflow_id == workflow_id))


async def delete_all_for_connector(session: AsyncSession, connector_id: str) -> None:
    await session.execute(delete(WorkflowStep).where(WorkflowStep.connector_id == connector_id))
    await session.execute(delete(SyncCursor).where(SyncCursor.connector_id == connector_id))


def _ts_value(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0
