"""
Read models for staff task lists and order listings.

A task is an order sitting in the status where a stage is claimed or worked
(see ``transitions.STAGE_CLAIM_STATUS`` / ``STAGE_WORK_STATUS``). It is
``claimed`` when an active claim exists for that stage and ``available``
otherwise. Current status comes from the ledger, never from a cached column.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy import String, and_, case, func, literal_column, or_, select, union_all
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from shoe_service.db import models as m
from shoe_service.services import transitions

MAX_PER_PAGE = 100


class TaskState(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"


class OrderState(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"


@dataclass(slots=True, frozen=True)
class TaskRow:
    order_id: int
    number: str
    order_type: m.OrderType
    status: m.OrderStatus
    stage: m.Stage
    scheduled_date: date
    created_at: datetime
    contact_name: Optional[str]
    contact_phone: Optional[str]
    claim_id: Optional[int]
    holder_id: Optional[int]

    @property
    def state(self) -> TaskState:
        return TaskState.CLAIMED if self.holder_id is not None else TaskState.AVAILABLE


@dataclass(slots=True, frozen=True)
class OrderRow:
    order_id: int
    number: str
    order_type: m.OrderType
    status: m.OrderStatus
    customer_id: int
    contact_name: Optional[str]
    contact_phone: Optional[str]
    scheduled_date: date
    created_at: datetime

    @property
    def state(self) -> OrderState:
        if self.status in transitions.TERMINAL_STATUSES:
            return OrderState.FINISHED
        return OrderState.ACTIVE


@dataclass(slots=True, frozen=True)
class Page:
    items: list[Any]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.per_page))


def _latest_status(suffix: str):
    latest = (
        select(
            m.order_status_history.order_id.label("order_id"),
            func.max(m.order_status_history.id).label("last_id"),
        )
        .group_by(m.order_status_history.order_id)
        .subquery(f"latest_{suffix}")
    )
    entry = aliased(m.order_status_history, name=f"entry_{suffix}")
    return latest, entry


def _matches(term: str, *columns):
    pattern = f"%{term.strip()}%"
    return or_(*(column.ilike(pattern) for column in columns))


def _paging(page: int, per_page: int) -> tuple[int, int]:
    return max(1, page), max(1, min(per_page, MAX_PER_PAGE))


def _stage_select(stage: m.Stage):
    latest, entry = _latest_status(stage.value)
    claim = aliased(m.order_claims, name=f"claim_{stage.value}")
    statuses = {transitions.STAGE_CLAIM_STATUS[stage], transitions.STAGE_WORK_STATUS[stage]}
    return (
        select(
            m.orders.id.label("order_id"),
            m.orders.number.label("number"),
            m.orders.type.label("order_type"),
            entry.to_status.label("status"),
            literal_column(f"'{stage.value}'", String(16)).label("stage"),
            m.orders.scheduled_date.label("scheduled_date"),
            m.orders.created_at.label("created_at"),
            m.orders.contact_name.label("contact_name"),
            m.orders.contact_phone.label("contact_phone"),
            claim.id.label("claim_id"),
            claim.holder_id.label("holder_id"),
        )
        .join(latest, latest.c.order_id == m.orders.id)
        .join(entry, entry.id == latest.c.last_id)
        .outerjoin(
            claim,
            and_(
                claim.order_id == m.orders.id,
                claim.stage == stage,
                claim.released_at.is_(None),
            ),
        )
        .where(entry.to_status.in_(statuses))
    )


def _tasks(stage: Optional[m.Stage]):
    stages = [m.Stage(stage)] if stage is not None else list(m.Stage)
    if len(stages) == 1:
        return _stage_select(stages[0]).subquery("tasks")
    return union_all(*(_stage_select(s) for s in stages)).subquery("tasks")


def _orders():
    latest, entry = _latest_status("orders")
    return (
        select(
            m.orders.id.label("order_id"),
            m.orders.number.label("number"),
            m.orders.type.label("order_type"),
            entry.to_status.label("status"),
            m.orders.customer_id.label("customer_id"),
            m.orders.contact_name.label("contact_name"),
            m.orders.contact_phone.label("contact_phone"),
            m.orders.scheduled_date.label("scheduled_date"),
            m.orders.created_at.label("created_at"),
        )
        .join(latest, latest.c.order_id == m.orders.id)
        .join(entry, entry.id == latest.c.last_id)
        .subquery("order_list")
    )


def _task_row(row) -> TaskRow:
    return TaskRow(
        order_id=row.order_id,
        number=row.number,
        order_type=m.OrderType(row.order_type),
        status=m.OrderStatus(row.status),
        stage=m.Stage(row.stage),
        scheduled_date=row.scheduled_date,
        created_at=row.created_at,
        contact_name=row.contact_name,
        contact_phone=row.contact_phone,
        claim_id=row.claim_id,
        holder_id=row.holder_id,
    )


def _order_row(row) -> OrderRow:
    return OrderRow(
        order_id=row.order_id,
        number=row.number,
        order_type=m.OrderType(row.order_type),
        status=m.OrderStatus(row.status),
        customer_id=row.customer_id,
        contact_name=row.contact_name,
        contact_phone=row.contact_phone,
        scheduled_date=row.scheduled_date,
        created_at=row.created_at,
    )


class TaskBoard:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_tasks(
        self,
        stage: Optional[m.Stage] = None,
        *,
        state: Optional[TaskState] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> Page:
        page, per_page = _paging(page, per_page)
        tasks = _tasks(stage)

        conditions = []
        if state == TaskState.AVAILABLE:
            conditions.append(tasks.c.holder_id.is_(None))
        elif state == TaskState.CLAIMED:
            conditions.append(tasks.c.holder_id.is_not(None))
        if search and search.strip():
            conditions.append(
                _matches(search, tasks.c.number, tasks.c.contact_name, tasks.c.contact_phone)
            )

        total = await self.session.scalar(
            select(func.count()).select_from(tasks).where(*conditions)
        )
        rows = (
            await self.session.execute(
                select(tasks)
                .where(*conditions)
                .order_by(
                    tasks.c.scheduled_date.asc(),
                    tasks.c.created_at.asc(),
                    tasks.c.order_id.asc(),
                )
                .limit(per_page)
                .offset((page - 1) * per_page)
            )
        ).all()
        return Page(
            items=[_task_row(r) for r in rows],
            total=int(total or 0),
            page=page,
            per_page=per_page,
        )

    async def task_counts(self) -> dict[m.Stage, dict[TaskState, int]]:
        tasks = _tasks(None)
        state_col = case(
            (tasks.c.holder_id.is_(None), literal_column(f"'{TaskState.AVAILABLE.value}'")),
            else_=literal_column(f"'{TaskState.CLAIMED.value}'"),
        ).label("state")
        rows = (
            await self.session.execute(
                select(tasks.c.stage, state_col, func.count())
                .group_by(tasks.c.stage, state_col)
            )
        ).all()
        counts = {stage: {s: 0 for s in TaskState} for stage in m.Stage}
        for stage, state, count in rows:
            counts[m.Stage(stage)][TaskState(state)] = int(count)
        return counts

    async def my_tasks(self, staff_id: int) -> Sequence[TaskRow]:
        tasks = _tasks(None)
        rows = (
            await self.session.execute(
                select(tasks)
                .where(tasks.c.holder_id == staff_id)
                .order_by(tasks.c.scheduled_date.asc(), tasks.c.order_id.asc())
            )
        ).all()
        return [_task_row(r) for r in rows]

    async def find_by_number(self, number: str) -> Optional[TaskRow]:
        tasks = _tasks(None)
        row = (
            await self.session.execute(
                select(tasks).where(tasks.c.number == number.strip()).limit(1)
            )
        ).first()
        return _task_row(row) if row is not None else None


class OrderBoard:
    """Order history lists: a customer's own orders, or every order of one type."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_orders(
        self,
        *,
        customer_id: Optional[int] = None,
        order_type: Optional[m.OrderType] = None,
        state: Optional[OrderState] = OrderState.ACTIVE,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> Page:
        """Newest first. ``state=None`` lists active and finished orders together."""
        page, per_page = _paging(page, per_page)
        orders = _orders()
        terminal = tuple(transitions.TERMINAL_STATUSES)

        conditions = []
        if customer_id is not None:
            conditions.append(orders.c.customer_id == customer_id)
        if order_type is not None:
            conditions.append(orders.c.order_type == m.OrderType(order_type))
        if state == OrderState.ACTIVE:
            conditions.append(orders.c.status.not_in(terminal))
        elif state == OrderState.FINISHED:
            conditions.append(orders.c.status.in_(terminal))
        if search and search.strip():
            conditions.append(
                _matches(search, orders.c.number, orders.c.contact_name, orders.c.contact_phone)
            )

        total = await self.session.scalar(
            select(func.count()).select_from(orders).where(*conditions)
        )
        rows = (
            await self.session.execute(
                select(orders)
                .where(*conditions)
                .order_by(orders.c.created_at.desc(), orders.c.order_id.desc())
                .limit(per_page)
                .offset((page - 1) * per_page)
            )
        ).all()
        return Page(
            items=[_order_row(r) for r in rows],
            total=int(total or 0),
            page=page,
            per_page=per_page,
        )
