"""
Analysis Infrastructure Repositories
====================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
task records and ticket data from the database.
"""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, List, Optional
from uuid import UUID

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.analysis.application import (
    ITaskRepository,
    IOwnerDirectory,
    AnalysisStores,
)
from src.analysis.domain import (
    AnalysisTask,
    TicketSnapshot,
    AnalysisProjection,
    TaskFilter,
    TaskPage,
    JobStatistics,
)
from src.config import TaskStatus, ACTIVE_TASK_STATUSES, VALID_TASK_STATUSES
from src.core import RepositoryException


# Columns copied one-to-one between AnalysisTask and AnalysisTaskModel
_TASK_FIELDS = (
    "kind", "status", "batch_id", "endpoint", "model", "correlation_id",
    "request_payload", "response_payload", "retrieval_items",
    "processing_steps", "console_logs",
    "total_duration_ms", "remote_call_duration_ms", "parse_duration_ms", "reply_duration_ms",
    "confidence_score", "suggested_priority", "sentiment_detected", "tags_generated",
    "has_suggested_response", "error_message", "error_class", "error_backtrace",
    "retry_count", "max_retries", "created_at", "updated_at", "started_at", "completed_at",
)

TOP_ERROR_TYPES = 5


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAlchemyAnalysisTaskRepository(ITaskRepository):
    """
    SQLAlchemy implementation of the task record repository.

    Methods flush but never commit; the unit of work belongs to the caller.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, task_id: str) -> Optional[AnalysisTask]:
        """Get task by ID."""
        model = await self._get_model(task_id)
        return self._to_domain(model) if model else None

    async def add(self, task: AnalysisTask) -> AnalysisTask:
        """Insert a new task."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        task_uuid = _parse_uuid(task.id)
        owner_uuid = _parse_uuid(task.owner_id)
        if task_uuid is None or owner_uuid is None:
            raise RepositoryException(f"Invalid identifiers for task {task.id}")

        model = AnalysisTaskModel(id=task_uuid, owner_id=owner_uuid)
        self._copy_to_model(task, model)
        self._session.add(model)
        await self._session.flush()
        return task

    async def save(self, task: AnalysisTask) -> None:
        """Write all fields of an existing task."""
        model = await self._get_model(task.id)
        if model is None:
            raise RepositoryException(f"Analysis task {task.id} not found")
        self._copy_to_model(task, model)
        await self._session.flush()

    async def find_active_for_owner(self, owner_id: str) -> Optional[AnalysisTask]:
        """Get the most recent in-progress task of a ticket."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        owner_uuid = _parse_uuid(owner_id)
        if owner_uuid is None:
            return None

        stmt = (
            select(AnalysisTaskModel)
            .where(
                AnalysisTaskModel.owner_id == owner_uuid,
                AnalysisTaskModel.status.in_(ACTIVE_TASK_STATUSES)
            )
            .order_by(desc(AnalysisTaskModel.created_at))
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def latest_for_owner(self, owner_id: str) -> Optional[AnalysisTask]:
        """Get the most recently created task of a ticket."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        owner_uuid = _parse_uuid(owner_id)
        if owner_uuid is None:
            return None

        stmt = (
            select(AnalysisTaskModel)
            .where(AnalysisTaskModel.owner_id == owner_uuid)
            .order_by(desc(AnalysisTaskModel.created_at))
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def list(self, task_filter: TaskFilter, page: int, per_page: int) -> TaskPage:
        """List tasks with filters, most recently updated first."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        conditions = []
        if task_filter.status:
            conditions.append(AnalysisTaskModel.status == task_filter.status)
        if task_filter.kind:
            conditions.append(AnalysisTaskModel.kind == task_filter.kind)
        if task_filter.owner_id:
            owner_uuid = _parse_uuid(task_filter.owner_id)
            if owner_uuid is None:
                return TaskPage(items=[], total=0, page=page, per_page=per_page)
            conditions.append(AnalysisTaskModel.owner_id == owner_uuid)

        start, end = task_filter.window(datetime.now(timezone.utc))
        if start is not None:
            conditions.append(AnalysisTaskModel.created_at >= start)
        if end is not None:
            conditions.append(AnalysisTaskModel.created_at <= end)

        count_stmt = select(func.count()).select_from(AnalysisTaskModel).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(AnalysisTaskModel)
            .where(*conditions)
            .order_by(desc(AnalysisTaskModel.updated_at))
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        result = await self._session.execute(stmt)
        items = [self._to_domain(m) for m in result.scalars().all()]

        return TaskPage(items=items, total=total, page=page, per_page=per_page)

    async def list_by_status(self, status: str) -> List[AnalysisTask]:
        """Get all tasks in a status."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        stmt = (
            select(AnalysisTaskModel)
            .where(AnalysisTaskModel.status == status)
            .order_by(AnalysisTaskModel.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def statuses_for_batch(self, batch_id: str) -> List[str]:
        """Get the status of every task of a submission."""
        from src.analysis.infrastructure.models import AnalysisTaskModel

        stmt = select(AnalysisTaskModel.status).where(AnalysisTaskModel.batch_id == batch_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def statistics(self, now: datetime) -> JobStatistics:
        """
        Compute dashboard statistics.

        Success rate is completed / (completed + failed) in percent. Average
        duration and top error classes cover the last seven days.
        """
        from src.analysis.infrastructure.models import AnalysisTaskModel

        stmt = select(AnalysisTaskModel.status, func.count()).group_by(AnalysisTaskModel.status)
        rows = (await self._session.execute(stmt)).all()
        by_status = {status: 0 for status in VALID_TASK_STATUSES}
        for status, count in rows:
            by_status[status] = count
        total = sum(by_status.values())

        recent_stmt = (
            select(func.count())
            .select_from(AnalysisTaskModel)
            .where(AnalysisTaskModel.created_at >= now - timedelta(hours=24))
        )
        recent_24h = (await self._session.execute(recent_stmt)).scalar_one()

        finished = by_status[TaskStatus.COMPLETED] + by_status[TaskStatus.FAILED]
        success_rate = 0.0
        if finished:
            success_rate = round(by_status[TaskStatus.COMPLETED] / finished * 100, 1)

        week_ago = now - timedelta(days=7)
        avg_stmt = select(func.avg(AnalysisTaskModel.total_duration_ms)).where(
            AnalysisTaskModel.status == TaskStatus.COMPLETED,
            AnalysisTaskModel.total_duration_ms.is_not(None),
            AnalysisTaskModel.created_at >= week_ago
        )
        average = (await self._session.execute(avg_stmt)).scalar_one()

        error_count = func.count().label("occurrences")
        errors_stmt = (
            select(AnalysisTaskModel.error_class, error_count)
            .where(
                AnalysisTaskModel.status == TaskStatus.FAILED,
                AnalysisTaskModel.error_class.is_not(None),
                AnalysisTaskModel.created_at >= week_ago
            )
            .group_by(AnalysisTaskModel.error_class)
            .order_by(desc(error_count))
            .limit(TOP_ERROR_TYPES)
        )
        top_errors = [(name, count) for name, count in (await self._session.execute(errors_stmt)).all()]

        return JobStatistics(
            total=total,
            by_status=by_status,
            recent_24h=recent_24h,
            success_rate=success_rate,
            average_duration_ms=int(round(average)) if average is not None else 0,
            top_error_types=top_errors,
        )

    # ========== Mapping ==========

    async def _get_model(self, task_id: str) -> Any:
        from src.analysis.infrastructure.models import AnalysisTaskModel

        task_uuid = _parse_uuid(task_id)
        if task_uuid is None:
            return None

        stmt = select(AnalysisTaskModel).where(AnalysisTaskModel.id == task_uuid)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _copy_to_model(task: AnalysisTask, model: Any) -> None:
        # JSON columns only register changes on reassignment, so always hand over copies
        for name in _TASK_FIELDS:
            setattr(model, name, copy.deepcopy(getattr(task, name)))

    @staticmethod
    def _to_domain(model: Any) -> AnalysisTask:
        values = {name: copy.deepcopy(getattr(model, name)) for name in _TASK_FIELDS}
        for name in ("created_at", "updated_at", "started_at", "completed_at"):
            values[name] = _aware(values[name])
        for name in ("request_payload", "response_payload"):
            values[name] = values[name] or {}
        for name in ("retrieval_items", "processing_steps", "console_logs", "tags_generated", "error_backtrace"):
            values[name] = values[name] or []
        return AnalysisTask(id=str(model.id), owner_id=str(model.owner_id), **values)


class SQLAlchemyOwnerDirectory(IOwnerDirectory):
    """
    Ticket access backed by the local ticket tables.

    Reads ticket content, appends activities and upserts the analysis
    projection row.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find(self, owner_id: str) -> Optional[TicketSnapshot]:
        """Get ticket by ID."""
        from src.analysis.infrastructure.models import TicketModel

        ticket_uuid = _parse_uuid(owner_id)
        if ticket_uuid is None:
            return None

        stmt = select(TicketModel).where(TicketModel.id == ticket_uuid)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            return None

        return TicketSnapshot(
            id=str(model.id),
            subject=model.subject,
            description=model.description,
            priority=model.priority,
            customer_name=model.customer_name,
            customer_mood=model.customer_mood,
            product_model=model.product_model,
            issue_category=model.issue_category,
            ticket_number=model.ticket_number
        )

    async def append_activity(
        self,
        owner_id: str,
        actor: str,
        action: str,
        description: str,
        performed_at: datetime
    ) -> None:
        """Append an activity to the ticket's audit trail."""
        from src.analysis.infrastructure.models import TicketActivityModel

        ticket_uuid = _parse_uuid(owner_id)
        if ticket_uuid is None:
            raise RepositoryException(f"Invalid ticket id: {owner_id}")

        self._session.add(TicketActivityModel(
            ticket_id=ticket_uuid,
            performed_by=actor,
            action=action,
            description=description,
            performed_at=performed_at
        ))
        await self._session.flush()

    async def update_projection(self, projection: AnalysisProjection) -> None:
        """Insert or update the ticket's analysis projection."""
        from src.analysis.infrastructure.models import AnalysisProjectionModel

        ticket_uuid = _parse_uuid(projection.owner_id)
        task_uuid = _parse_uuid(projection.task_id)
        if ticket_uuid is None or task_uuid is None:
            raise RepositoryException(f"Invalid projection identifiers for ticket {projection.owner_id}")

        model = await self._session.get(AnalysisProjectionModel, ticket_uuid)
        if model is None:
            model = AnalysisProjectionModel(ticket_id=ticket_uuid)
            self._session.add(model)

        model.task_id = task_uuid
        model.analysis_status = projection.analysis_status
        model.status_updated_at = projection.status_updated_at
        model.error_message = projection.error_message
        for name, value in projection.result_values().items():
            setattr(model, name, copy.deepcopy(value))

        await self._session.flush()

    async def list_activities(self, owner_id: str) -> List[Any]:
        """Activities of a ticket, oldest first."""
        from src.analysis.infrastructure.models import TicketActivityModel

        ticket_uuid = _parse_uuid(owner_id)
        if ticket_uuid is None:
            return []

        stmt = (
            select(TicketActivityModel)
            .where(TicketActivityModel.ticket_id == ticket_uuid)
            .order_by(TicketActivityModel.performed_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_projection(self, owner_id: str) -> Optional[Any]:
        """The stored projection row of a ticket."""
        from src.analysis.infrastructure.models import AnalysisProjectionModel

        ticket_uuid = _parse_uuid(owner_id)
        if ticket_uuid is None:
            return None
        return await self._session.get(AnalysisProjectionModel, ticket_uuid)


def sqlalchemy_store_provider(session_maker: async_sessionmaker):
    """
    Build a StoreProvider opening one session per unit of work.

    Uncommitted changes are rolled back when the block raises.
    """

    @asynccontextmanager
    async def provide() -> AsyncIterator[AnalysisStores]:
        async with session_maker() as session:
            try:
                yield AnalysisStores(
                    tasks=SQLAlchemyAnalysisTaskRepository(session),
                    owners=SQLAlchemyOwnerDirectory(session),
                    commit=session.commit,
                    rollback=session.rollback
                )
            except Exception:
                await session.rollback()
                raise

    return provide
