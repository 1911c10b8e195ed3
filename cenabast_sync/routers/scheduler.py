from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from cenabast_sync.db import get_db
from cenabast_sync.dependencies import get_client_ip, require_cron_secret
from cenabast_sync.models import ExecutionLog, SubmissionTask, TriggerMode
from cenabast_sync.schemas import ManualExecution, TaskCreate, TaskUpdate
from cenabast_sync.services.audit_service import log_audit
from cenabast_sync.services.scheduler_service import (
    build_adhoc_task,
    create_task,
    deactivate_task,
    execute_task,
    get_task,
    list_execution_logs,
    list_tasks,
    parse_weekdays,
    run_due_tasks,
    task_counters,
    update_task,
)

router = APIRouter(prefix='/cenabast/scheduler', tags=['scheduler'])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _task_row(task: SubmissionTask, counters: dict | None = None) -> dict:
    counters = counters or {'success_count': 0, 'failure_count': 0}
    return {
        'id': task.id,
        'name': task.name,
        'kind': task.kind.value,
        'active': task.active,
        'run_time': task.run_time,
        'weekdays': parse_weekdays(task.weekdays),
        'relation_id': task.relation_id,
        'purchase_channel': task.purchase_channel,
        'last_run_at': _iso(task.last_run_at),
        'next_run_at': _iso(task.next_run_at),
        **counters,
    }


def _log_row(log: ExecutionLog) -> dict:
    return {
        'id': log.id,
        'task_id': log.task_id,
        'kind': log.kind.value,
        'trigger': log.trigger.value,
        'state': log.state.value,
        'started_at': _iso(log.started_at),
        'finished_at': _iso(log.finished_at),
        'items_sent': log.items_sent,
        'items_failed': log.items_failed,
        'message': log.message,
        'error_category': log.error_category,
        'recoverable': log.recoverable,
        'effective_date': _iso(log.effective_date),
        'triggered_by': log.triggered_by,
        'response_detail': log.response_detail,
    }


@router.get('')
def tasks_index(db: Session = Depends(get_db)):
    tasks = list_tasks(db)
    counters = task_counters(db, [task.id for task in tasks])
    return {'tasks': [_task_row(task, counters.get(task.id)) for task in tasks]}


@router.post('')
def tasks_create(payload: TaskCreate, request: Request, db: Session = Depends(get_db)):
    try:
        task = create_task(
            db,
            name=payload.name,
            kind=payload.kind,
            run_time=payload.run_time,
            weekdays=payload.weekdays,
            relation_id=payload.relation_id,
            purchase_channel=payload.purchase_channel,
            active=payload.active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, action='CREAR_TAREA', ip=get_client_ip(request), metadata={'task_id': task.id})
    db.commit()
    return _task_row(task)


@router.get('/execute', dependencies=[Depends(require_cron_secret)])
def execute_due(db: Session = Depends(get_db)):
    results = run_due_tasks(db)
    return {
        'executed': len(results),
        'succeeded': sum(1 for result in results if result.success),
        'results': [result.as_dict() for result in results],
    }


@router.post('/execute')
def execute_manual(payload: ManualExecution, request: Request, db: Session = Depends(get_db)):
    try:
        if payload.task_id is not None:
            task = get_task(db, payload.task_id)
        elif payload.kind is not None:
            task = build_adhoc_task(
                payload.kind,
                relation_id=payload.relation_id,
                purchase_channel=payload.purchase_channel,
            )
        else:
            raise HTTPException(status_code=400, detail='task_id or kind is required')
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    result = execute_task(
        db,
        task,
        trigger=TriggerMode.MANUAL,
        target_date=payload.target_date,
        triggered_by=get_client_ip(request) or 'manual',
    )
    return result.as_dict()


@router.get('/logs')
def execution_logs(request: Request, db: Session = Depends(get_db)):
    params = request.query_params
    page_raw = params.get('page', '1').strip()
    size_raw = params.get('page_size', '50').strip()
    try:
        from_raw = params.get('from', '').strip()
        to_raw = params.get('to', '').strip()
        date_from = date.fromisoformat(from_raw) if from_raw else None
        date_to = date.fromisoformat(to_raw) if to_raw else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid date filter') from exc

    page = int(page_raw) if page_raw.isdigit() else 1
    page_size = int(size_raw) if size_raw.isdigit() else 50
    try:
        rows, total = list_execution_logs(
            db,
            page=page,
            page_size=page_size,
            kind=params.get('kind') or None,
            state=params.get('state') or None,
            trigger=params.get('trigger') or None,
            date_from=date_from,
            date_to=date_to,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {'page': page, 'page_size': page_size, 'total': total, 'logs': [_log_row(row) for row in rows]}


@router.put('/{task_id}')
def tasks_update(task_id: int, payload: TaskUpdate, request: Request, db: Session = Depends(get_db)):
    try:
        task = update_task(db, task_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        status_code = 404 if str(exc) == 'Task not found' else 400
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    log_audit(db, action='ACTUALIZAR_TAREA', ip=get_client_ip(request), metadata={'task_id': task.id})
    db.commit()
    return _task_row(task)


@router.delete('/{task_id}')
def tasks_deactivate(task_id: int, request: Request, db: Session = Depends(get_db)):
    try:
        task = deactivate_task(db, task_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    log_audit(db, action='DESACTIVAR_TAREA', ip=get_client_ip(request), metadata={'task_id': task.id})
    db.commit()
    return {'success': True, 'id': task.id, 'active': task.active}
