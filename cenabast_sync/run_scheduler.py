from __future__ import annotations

import argparse
import logging
from datetime import date

from cenabast_sync.config import settings
from cenabast_sync.db import SessionLocal
from cenabast_sync.models import TaskKind, TriggerMode
from cenabast_sync.services.scheduler_service import (
    ExecutionResult,
    build_adhoc_task,
    execute_task,
    get_task,
    run_due_tasks,
)


def run(
    *,
    due: bool = False,
    task_id: int | None = None,
    kind: str | None = None,
    target_date: date | None = None,
) -> list[ExecutionResult]:
    with SessionLocal() as db:
        if due:
            return run_due_tasks(db)
        if task_id is not None:
            task = get_task(db, task_id)
        elif kind:
            task = build_adhoc_task(kind)
        else:
            raise ValueError('One of --due, --task-id or --kind is required')
        return [execute_task(db, task, trigger=TriggerMode.MANUAL, target_date=target_date, triggered_by='cli')]


def main() -> None:
    parser = argparse.ArgumentParser(description='Run CENABAST submission tasks.')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--due', action='store_true', help='Run every active task whose next run time has passed.')
    group.add_argument('--task-id', type=int, help='Run one stored task now without changing its schedule.')
    group.add_argument('--kind', choices=[kind.value for kind in TaskKind], help='Run an ad-hoc task of this kind.')
    parser.add_argument('--date', type=date.fromisoformat, help='Target date (YYYY-MM-DD) for manual runs.')
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if args.due and args.date:
        parser.error('--date only applies to --task-id or --kind')

    try:
        results = run(due=args.due, task_id=args.task_id, kind=args.kind, target_date=args.date)
    except ValueError as exc:
        parser.error(str(exc))

    for result in results:
        print(
            f'{result.kind.value} task={result.task_id} state={result.state.value} '
            f'sent={result.items_sent} failed={result.items_failed}: {result.message}'
        )
    failed = sum(1 for result in results if not result.success)
    print(f'CENABAST run complete: executed={len(results)}, failed={failed}')


if __name__ == '__main__':
    main()
