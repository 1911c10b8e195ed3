from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from cenabast_sync.config import settings
from cenabast_sync.models import ExecutionLog, ExecutionState, SubmissionTask, TaskKind, TriggerMode
from cenabast_sync.services.broker_factory import get_broker_client
from cenabast_sync.services.selection_service import MovementDirection
from cenabast_sync.services.submission_service import (
    SubmissionOutcome,
    submit_movements,
    submit_stock,
    submit_stock_rules,
)
from cenabast_sync.services.token_service import get_valid_token

logger = logging.getLogger(__name__)

PURCHASE_CHANNELS = ('C', 'M')
TERMINAL_STATES = (ExecutionState.COMPLETED, ExecutionState.ERROR)
ADHOC_TASK_NAME = 'Manual run'
ALL_WEEKDAYS = '1,2,3,4,5,6,7'
NO_TOKEN_MESSAGE = 'No valid token: the broker was not contacted'
MAX_LOG_PAGE_SIZE = 200


@dataclass(frozen=True)
class ExecutionResult:
    task_id: int | None
    log_id: int
    kind: TaskKind
    state: ExecutionState
    items_sent: int
    items_failed: int
    message: str
    effective_date: date | None = None
    error: dict | None = None

    @property
    def success(self) -> bool:
        return self.state == ExecutionState.COMPLETED

    def as_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'log_id': self.log_id,
            'kind': self.kind.value,
            'state': self.state.value,
            'success': self.success,
            'items_sent': self.items_sent,
            'items_failed': self.items_failed,
            'message': self.message,
            'effective_date': self.effective_date.isoformat() if self.effective_date else None,
            'error': self.error,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _local_tz() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def local_today(now: datetime | None = None) -> date:
    return _as_utc(now or _now()).astimezone(_local_tz()).date()


def parse_kind(value: str | TaskKind) -> TaskKind:
    if isinstance(value, TaskKind):
        return value
    try:
        return TaskKind((value or '').strip().upper())
    except ValueError as exc:
        raise ValueError(f'Invalid task kind: {value!r}') from exc


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError as exc:
        raise ValueError(f'Invalid {label}: {value!r}') from exc


def parse_run_time(value: str) -> time:
    try:
        hours, minutes = (value or '').strip().split(':')
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise ValueError(f'Invalid run time {value!r}, expected HH:MM') from exc


def parse_weekdays(value: str | Iterable[int] | None) -> list[int]:
    """Parse a weekday list where 1 is Monday and 7 is Sunday."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(',') if part.strip()]
    else:
        parts = list(value)
    try:
        days = sorted({int(part) for part in parts})
    except (TypeError, ValueError) as exc:
        raise ValueError(f'Invalid weekday list: {value!r}') from exc
    if any(day < 1 or day > 7 for day in days):
        raise ValueError('Weekdays must be between 1 (Monday) and 7 (Sunday)')
    return days


def format_weekdays(days: Iterable[int]) -> str:
    return ','.join(str(day) for day in sorted(set(days)))


def compute_next_run(run_time: str, weekdays: str | Iterable[int], *, now: datetime | None = None) -> datetime:
    tz = _local_tz()
    local_now = _as_utc(now or _now()).astimezone(tz)
    at = parse_run_time(run_time)
    days = set(parse_weekdays(weekdays))

    for offset in range(8):
        day = local_now.date() + timedelta(days=offset)
        if day.isoweekday() not in days:
            continue
        candidate = datetime.combine(day, at, tzinfo=tz)
        if candidate <= local_now:
            continue
        return candidate.astimezone(timezone.utc)

    fallback = datetime.combine(local_now.date() + timedelta(days=1), at, tzinfo=tz)
    return fallback.astimezone(timezone.utc)


def _reschedule(task: SubmissionTask, *, now: datetime) -> datetime | None:
    try:
        return compute_next_run(task.run_time, task.weekdays, now=now)
    except ValueError:
        logger.error(
            'Task %s has an invalid schedule (%r at %r) and will not run again until it is updated',
            task.id,
            task.weekdays,
            task.run_time,
        )
        return None


def _normalize_channel(value: str | None) -> str:
    channel = (value or 'C').strip().upper()
    if channel not in PURCHASE_CHANNELS:
        raise ValueError(f'Invalid purchase channel {value!r}, expected C or M')
    return channel


def build_adhoc_task(
    kind: str | TaskKind,
    *,
    relation_id: int | None = None,
    purchase_channel: str | None = None,
) -> SubmissionTask:
    return SubmissionTask(
        id=None,
        name=ADHOC_TASK_NAME,
        kind=parse_kind(kind),
        active=True,
        run_time='00:00',
        weekdays=ALL_WEEKDAYS,
        relation_id=relation_id or settings.default_relation_id,
        purchase_channel=_normalize_channel(purchase_channel),
    )


def _start_log(
    db: Session,
    task: SubmissionTask,
    *,
    trigger: TriggerMode,
    now: datetime,
    triggered_by: str,
) -> ExecutionLog:
    log = ExecutionLog(
        task_id=task.id,
        kind=task.kind,
        trigger=trigger,
        state=ExecutionState.RUNNING,
        started_at=now,
        triggered_by=triggered_by,
    )
    db.add(log)
    db.commit()
    return log


def finish_log(db: Session, log: ExecutionLog, outcome: SubmissionOutcome, *, finished_at: datetime) -> ExecutionLog:
    if log.state in TERMINAL_STATES:
        raise ValueError(f'Execution log {log.id} is already finalized')
    log.state = ExecutionState.COMPLETED if outcome.success else ExecutionState.ERROR
    log.finished_at = finished_at
    log.items_sent = outcome.items_sent
    log.items_failed = outcome.items_failed
    log.message = outcome.message
    log.error_category = outcome.error_category
    log.recoverable = outcome.recoverable
    log.effective_date = outcome.effective_date
    log.response_detail = outcome.response_detail() or None
    db.flush()
    return log


def _dispatch(
    db: Session,
    task: SubmissionTask,
    *,
    token: str,
    client,
    target_date: date | None,
    now: datetime,
) -> SubmissionOutcome:
    relation_id = task.relation_id or settings.default_relation_id
    if task.kind == TaskKind.STOCK:
        return submit_stock(
            db,
            token=token,
            client=client,
            relation_id=relation_id,
            cutoff_date=target_date,
            today=local_today(now),
        )
    if task.kind == TaskKind.STOCK_RULES:
        return submit_stock_rules(db, token=token, client=client, relation_id=relation_id, cutoff_date=target_date)

    direction = MovementDirection.INBOUND if task.kind == TaskKind.MOVEMENT_INBOUND else MovementDirection.OUTBOUND
    return submit_movements(
        db,
        token=token,
        client=client,
        direction=direction,
        relation_id=relation_id,
        movement_date=target_date or local_today(now),
        purchase_channel=task.purchase_channel or 'C',
    )


def execute_task(
    db: Session,
    task: SubmissionTask,
    *,
    trigger: TriggerMode,
    target_date: date | None = None,
    client=None,
    now: datetime | None = None,
    triggered_by: str = 'system',
) -> ExecutionResult:
    now = _as_utc(now or _now())
    client = client or get_broker_client()
    log = _start_log(db, task, trigger=trigger, now=now, triggered_by=triggered_by)
    logger.info('Executing %s task %s (%s)', task.kind.value, task.id, trigger.value)

    try:
        token = get_valid_token(db, client=client, now=now)
        if token is None:
            outcome = SubmissionOutcome(kind=task.kind, success=False, message=NO_TOKEN_MESSAGE)
        else:
            outcome = _dispatch(db, task, token=token.token, client=client, target_date=target_date, now=now)
    except Exception as exc:
        db.rollback()
        logger.exception('Task %s (%s) failed unexpectedly', task.id, task.kind.value)
        outcome = SubmissionOutcome(kind=task.kind, success=False, message=f'Unexpected error: {exc}')

    try:
        finish_log(db, log, outcome, finished_at=_now())
        if task.id is not None:
            task.last_run_at = now
            if trigger == TriggerMode.SCHEDULED:
                task.next_run_at = _reschedule(task, now=now)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception('Could not record the run of task %s (%s)', task.id, task.kind.value)
        outcome = SubmissionOutcome(
            kind=task.kind,
            success=False,
            effective_date=outcome.effective_date,
            message=f'Could not record run: {exc}',
        )
        finish_log(db, log, outcome, finished_at=_now())
        db.commit()

    if outcome.success:
        logger.info('Task %s (%s) completed: %s', task.id, task.kind.value, outcome.message)
    else:
        logger.warning('Task %s (%s) failed: %s', task.id, task.kind.value, outcome.message)

    return ExecutionResult(
        task_id=task.id,
        log_id=log.id,
        kind=task.kind,
        state=log.state,
        items_sent=log.items_sent,
        items_failed=log.items_failed,
        message=log.message or '',
        effective_date=outcome.effective_date,
        error=outcome.error.as_dict() if outcome.error else None,
    )


def list_due_tasks(db: Session, *, now: datetime | None = None) -> list[SubmissionTask]:
    now = _as_utc(now or _now())
    return db.execute(
        select(SubmissionTask)
        .where(
            SubmissionTask.active.is_(True),
            SubmissionTask.next_run_at.is_not(None),
            SubmissionTask.next_run_at <= now,
        )
        .order_by(SubmissionTask.next_run_at.asc(), SubmissionTask.id.asc())
    ).scalars().all()


def run_due_tasks(db: Session, *, client=None, now: datetime | None = None) -> list[ExecutionResult]:
    now = _as_utc(now or _now())
    client = client or get_broker_client()
    tasks = list_due_tasks(db, now=now)
    logger.info('%d scheduled tasks due', len(tasks))
    results = []
    for task in tasks:
        task_id = task.id
        try:
            results.append(execute_task(db, task, trigger=TriggerMode.SCHEDULED, client=client, now=now))
        except Exception:
            db.rollback()
            logger.exception('Scheduled task %s could not be executed', task_id)
    return results


def list_tasks(db: Session, *, include_inactive: bool = True) -> list[SubmissionTask]:
    query = select(SubmissionTask).order_by(SubmissionTask.kind.asc(), SubmissionTask.run_time.asc())
    if not include_inactive:
        query = query.where(SubmissionTask.active.is_(True))
    return db.execute(query).scalars().all()


def get_task(db: Session, task_id: int) -> SubmissionTask:
    task = db.execute(select(SubmissionTask).where(SubmissionTask.id == task_id)).scalar_one_or_none()
    if not task:
        raise ValueError('Task not found')
    return task


def create_task(
    db: Session,
    *,
    name: str,
    kind: str | TaskKind,
    run_time: str,
    weekdays: str | Iterable[int] = '1,2,3,4,5',
    relation_id: int | None = None,
    purchase_channel: str | None = None,
    active: bool = True,
    now: datetime | None = None,
) -> SubmissionTask:
    name = (name or '').strip()
    if not name:
        raise ValueError('Task name is required')
    days = parse_weekdays(weekdays)
    if not days:
        raise ValueError('At least one weekday is required')
    parse_run_time(run_time)

    task = SubmissionTask(
        name=name,
        kind=parse_kind(kind),
        active=active,
        run_time=run_time.strip(),
        weekdays=format_weekdays(days),
        relation_id=relation_id or settings.default_relation_id,
        purchase_channel=_normalize_channel(purchase_channel),
        next_run_at=compute_next_run(run_time, days, now=now),
    )
    db.add(task)
    db.flush()
    return task


def update_task(
    db: Session,
    task_id: int,
    *,
    name: str | None = None,
    kind: str | TaskKind | None = None,
    run_time: str | None = None,
    weekdays: str | Iterable[int] | None = None,
    relation_id: int | None = None,
    purchase_channel: str | None = None,
    active: bool | None = None,
    now: datetime | None = None,
) -> SubmissionTask:
    task = get_task(db, task_id)
    schedule_changed = False

    if name is not None:
        if not name.strip():
            raise ValueError('Task name is required')
        task.name = name.strip()
    if kind is not None:
        task.kind = parse_kind(kind)
    if run_time is not None:
        parse_run_time(run_time)
        task.run_time = run_time.strip()
        schedule_changed = True
    if weekdays is not None:
        days = parse_weekdays(weekdays)
        if not days:
            raise ValueError('At least one weekday is required')
        task.weekdays = format_weekdays(days)
        schedule_changed = True
    if relation_id is not None:
        task.relation_id = relation_id
    if purchase_channel is not None:
        task.purchase_channel = _normalize_channel(purchase_channel)
    if active is not None:
        if active and not task.active:
            schedule_changed = True
        task.active = active

    if schedule_changed:
        task.next_run_at = compute_next_run(task.run_time, task.weekdays, now=now)
    db.flush()
    return task


def deactivate_task(db: Session, task_id: int) -> SubmissionTask:
    task = get_task(db, task_id)
    task.active = False
    db.flush()
    return task


def task_counters(db: Session, task_ids: Iterable[int]) -> dict[int, dict[str, int]]:
    ids = list(task_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(
            ExecutionLog.task_id,
            func.coalesce(func.sum(case((ExecutionLog.state == ExecutionState.COMPLETED, 1), else_=0)), 0),
            func.coalesce(func.sum(case((ExecutionLog.state == ExecutionState.ERROR, 1), else_=0)), 0),
        )
        .where(ExecutionLog.task_id.in_(ids))
        .group_by(ExecutionLog.task_id)
    ).all()
    counters = {task_id: {'success_count': 0, 'failure_count': 0} for task_id in ids}
    for task_id, success_count, failure_count in rows:
        counters[task_id] = {'success_count': int(success_count), 'failure_count': int(failure_count)}
    return counters


def list_execution_logs(
    db: Session,
    *,
    page: int = 1,
    page_size: int = 50,
    kind: str | TaskKind | None = None,
    state: str | ExecutionState | None = None,
    trigger: str | TriggerMode | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> tuple[list[ExecutionLog], int]:
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_LOG_PAGE_SIZE)

    filters = []
    if kind:
        filters.append(ExecutionLog.kind == parse_kind(kind))
    if state:
        filters.append(ExecutionLog.state == _parse_enum(ExecutionState, state, 'execution state'))
    if trigger:
        filters.append(ExecutionLog.trigger == _parse_enum(TriggerMode, trigger, 'trigger'))
    if date_from:
        filters.append(ExecutionLog.started_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to:
        filters.append(
            ExecutionLog.started_at < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )

    total = db.execute(select(func.count(ExecutionLog.id)).where(*filters)).scalar_one()
    rows = db.execute(
        select(ExecutionLog)
        .where(*filters)
        .order_by(ExecutionLog.started_at.desc(), ExecutionLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()
    return rows, int(total)
