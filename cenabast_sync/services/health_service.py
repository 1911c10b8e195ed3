from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cenabast_sync.models import MovementRecord, StockSnapshotRecord
from cenabast_sync.services.audit_service import recent_audit_entries
from cenabast_sync.services.broker_client import BrokerChannel
from cenabast_sync.services.broker_factory import get_broker_client
from cenabast_sync.services.token_service import get_token_status

logger = logging.getLogger(__name__)

TOKEN_WARNING_HOURS = 2


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def check_database(db: Session) -> dict:
    try:
        db.execute(text('SELECT 1'))
    except SQLAlchemyError as exc:
        logger.error('Database health check failed: %s', exc)
        return {'status': 'error', 'message': str(exc)}
    return {'status': 'ok', 'message': 'Database reachable'}


def check_token(db: Session, *, now: datetime | None = None) -> dict:
    status = get_token_status(db, now=now)
    if not status['has_token'] or status['is_expired']:
        level = 'error'
    elif status['hours_remaining'] < TOKEN_WARNING_HOURS:
        level = 'warning'
    else:
        level = 'ok'
    return {'status': level, **status}


def check_broker(client=None) -> dict:
    client = client or get_broker_client()
    channels = {channel.value: client.probe(channel) for channel in BrokerChannel}
    reachable = sum(1 for up in channels.values() if up)
    if reachable == len(channels):
        level = 'ok'
    elif reachable:
        level = 'partial'
    else:
        level = 'error'
    return {'status': level, 'host': client.host, 'channels': channels}


def data_summary(db: Session) -> dict:
    stock_count, latest_stock = db.execute(
        select(func.count(StockSnapshotRecord.id), func.max(StockSnapshotRecord.cutoff_date))
    ).one()
    movement_count, latest_movement = db.execute(
        select(func.count(MovementRecord.id), func.max(MovementRecord.movement_date))
    ).one()
    return {
        'stock_rows': int(stock_count or 0),
        'latest_stock_date': latest_stock.isoformat() if latest_stock else None,
        'movement_rows': int(movement_count or 0),
        'latest_movement_date': latest_movement.isoformat() if latest_movement else None,
    }


def recent_operations(db: Session, *, limit: int = 10) -> list[dict]:
    return [
        {
            'action': entry.action,
            'actor': entry.actor,
            'metadata': entry.meta,
            'created_at': entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in recent_audit_entries(db, limit=limit)
    ]


def build_health_report(db: Session, *, client=None, now: datetime | None = None) -> dict:
    database = check_database(db)
    report: dict = {
        'checked_at': (now or _now()).isoformat(),
        'components': {'database': database},
    }

    if database['status'] == 'ok':
        report['components']['token'] = check_token(db, now=now)
        report['data'] = data_summary(db)
        report['recent_operations'] = recent_operations(db)
    else:
        report['components']['token'] = {'status': 'error', 'message': 'Database unavailable'}
        report['data'] = None
        report['recent_operations'] = []

    report['components']['broker'] = check_broker(client)

    if database['status'] != 'ok':
        report['status'] = 'unhealthy'
    elif all(component['status'] == 'ok' for component in report['components'].values()):
        report['status'] = 'healthy'
    else:
        report['status'] = 'degraded'
    return report
