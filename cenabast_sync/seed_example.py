from sqlalchemy import select

from cenabast_sync.db import SessionLocal, engine
from cenabast_sync.models import Base, SubmissionTask, TaskKind
from cenabast_sync.services.scheduler_service import create_task

DEFAULT_TASKS = [
    {'name': 'Daily stock report', 'kind': TaskKind.STOCK, 'run_time': '08:00'},
    {'name': 'Inbound movements', 'kind': TaskKind.MOVEMENT_INBOUND, 'run_time': '20:00'},
    {'name': 'Outbound movements', 'kind': TaskKind.MOVEMENT_OUTBOUND, 'run_time': '20:15'},
]


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        for item in DEFAULT_TASKS:
            existing = db.execute(select(SubmissionTask).where(SubmissionTask.kind == item['kind'])).scalars().first()
            if existing:
                continue
            create_task(db, weekdays='1,2,3,4,5', **item)
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed complete')
