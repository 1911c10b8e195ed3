from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from cenabast_sync.config import settings
from cenabast_sync.models import MovementRecord, StockSnapshotRecord

ALLOWED_DOCUMENT_TYPES = ('FACTURA', 'GUIA DESPACHO')
# Intra-facility transfers are booked against this placeholder and never reported.
EXCLUDED_COUNTERPARTY_ID = '11-101'
DIAGNOSTIC_EXAMPLE_LIMIT = 20


class MovementDirection(str, Enum):
    INBOUND = 'E'
    OUTBOUND = 'S'


@dataclass(frozen=True)
class StockSnapshotRow:
    internal_code: str
    generic_code: str | None
    quantity: int
    description: str | None = None


@dataclass(frozen=True)
class MovementRow:
    movement_date: date
    quantity: int
    internal_code: str | None
    generic_code: str | None
    document_type: str | None
    document_number: str | None
    counterparty_id: str | None
    lot_number: str | None = None
    expiry_date: date | None = None
    description: str | None = None


@dataclass(frozen=True)
class StockRuleRow:
    internal_code: str
    stock_min: int
    stock_max: int


@dataclass(frozen=True)
class MovementDiagnostics:
    movement_date: date
    direction: MovementDirection
    total: int
    matching_direction: int
    allowed_document_type: int
    external_counterparty: int
    missing_internal_code: int
    eligible: int

    def as_dict(self) -> dict:
        return {
            'movement_date': self.movement_date.isoformat(),
            'direction': self.direction.value,
            'total': self.total,
            'matching_direction': self.matching_direction,
            'allowed_document_type': self.allowed_document_type,
            'external_counterparty': self.external_counterparty,
            'missing_internal_code': self.missing_internal_code,
            'eligible': self.eligible,
        }


@dataclass(frozen=True)
class MovementSelection:
    rows: list[MovementRow]
    diagnostics: MovementDiagnostics


@dataclass
class StockDiagnostics:
    cutoff_date: date
    total: int = 0
    with_stock: int = 0
    missing_internal_code: int = 0
    missing_generic_code: int = 0
    blank_generic_code: int = 0
    non_numeric_generic_code: int = 0
    approved: int = 0
    rejected_examples: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            'cutoff_date': self.cutoff_date.isoformat(),
            'total': self.total,
            'with_stock': self.with_stock,
            'missing_internal_code': self.missing_internal_code,
            'missing_generic_code': self.missing_generic_code,
            'blank_generic_code': self.blank_generic_code,
            'non_numeric_generic_code': self.non_numeric_generic_code,
            'approved': self.approved,
            'rejected_examples': self.rejected_examples,
        }


def parse_direction(value: str | MovementDirection) -> MovementDirection:
    if isinstance(value, MovementDirection):
        return value
    try:
        return MovementDirection((value or '').strip().upper())
    except ValueError as exc:
        raise ValueError(f'Invalid movement direction: {value!r}') from exc


def normalize_document_type(value: str | None) -> str:
    return (value or '').strip().upper()


def is_numeric_generic_code(value: str | None) -> bool:
    return bool(value) and value.strip().isdigit()


def _direction_clause(direction: MovementDirection):
    if direction == MovementDirection.INBOUND:
        return MovementRecord.quantity > 0
    return MovementRecord.quantity < 0


def _document_type_clause():
    return func.upper(func.trim(MovementRecord.document_type)).in_(ALLOWED_DOCUMENT_TYPES)


def _counterparty_clause():
    return or_(
        MovementRecord.counterparty_id.is_(None),
        func.trim(MovementRecord.counterparty_id) != EXCLUDED_COUNTERPARTY_ID,
    )


def _movement_eligibility(direction: MovementDirection) -> list:
    return [_direction_clause(direction), _document_type_clause(), _counterparty_clause()]


def _count_when(clause):
    return func.coalesce(func.sum(case((clause, 1), else_=0)), 0)


def _to_movement_row(record: MovementRecord) -> MovementRow:
    return MovementRow(
        movement_date=record.movement_date,
        quantity=int(record.quantity),
        internal_code=record.internal_code,
        generic_code=record.generic_code,
        document_type=record.document_type,
        document_number=record.document_number,
        counterparty_id=record.counterparty_id,
        lot_number=record.lot_number,
        expiry_date=record.expiry_date,
        description=record.description,
    )


def diagnose_movements(db: Session, day: date, direction: str | MovementDirection) -> MovementDiagnostics:
    direction = parse_direction(direction)
    eligible = _movement_eligibility(direction)
    row = db.execute(
        select(
            func.count(MovementRecord.id),
            _count_when(_direction_clause(direction)),
            _count_when(_document_type_clause()),
            _count_when(_counterparty_clause()),
            _count_when(MovementRecord.internal_code.is_(None)),
            _count_when(and_(*eligible)),
        ).where(MovementRecord.movement_date == day)
    ).one()
    return MovementDiagnostics(
        movement_date=day,
        direction=direction,
        total=int(row[0] or 0),
        matching_direction=int(row[1]),
        allowed_document_type=int(row[2]),
        external_counterparty=int(row[3]),
        missing_internal_code=int(row[4]),
        eligible=int(row[5]),
    )


def select_movement_candidates(db: Session, day: date, direction: str | MovementDirection) -> MovementSelection:
    direction = parse_direction(direction)
    records = db.execute(
        select(MovementRecord)
        .where(MovementRecord.movement_date == day, *_movement_eligibility(direction))
        .order_by(MovementRecord.internal_code.asc(), MovementRecord.id.asc())
    ).scalars().all()
    return MovementSelection(
        rows=[_to_movement_row(record) for record in records],
        diagnostics=diagnose_movements(db, day, direction),
    )


def latest_movement_date(db: Session, direction: str | MovementDirection, *, before: date) -> date | None:
    direction = parse_direction(direction)
    return db.execute(
        select(func.max(MovementRecord.movement_date)).where(
            MovementRecord.movement_date < before,
            *_movement_eligibility(direction),
        )
    ).scalar_one_or_none()


def _stock_groups(db: Session, cutoff_date: date) -> list:
    total_quantity = func.sum(StockSnapshotRecord.quantity)
    return db.execute(
        select(
            StockSnapshotRecord.internal_code,
            StockSnapshotRecord.generic_code,
            total_quantity.label('quantity'),
            func.max(StockSnapshotRecord.description).label('description'),
        )
        .where(
            StockSnapshotRecord.cutoff_date == cutoff_date,
            StockSnapshotRecord.internal_code.is_not(None),
        )
        .group_by(StockSnapshotRecord.internal_code, StockSnapshotRecord.generic_code)
        .having(total_quantity > 0)
        .order_by(StockSnapshotRecord.internal_code.asc())
    ).all()


def select_stock_candidates(
    db: Session,
    cutoff_date: date,
    *,
    require_numeric_generic_code: bool | None = None,
) -> list[StockSnapshotRow]:
    if require_numeric_generic_code is None:
        require_numeric_generic_code = settings.stock_require_numeric_generic_code

    rows = [
        StockSnapshotRow(
            internal_code=group.internal_code,
            generic_code=group.generic_code,
            quantity=int(group.quantity),
            description=group.description,
        )
        for group in _stock_groups(db, cutoff_date)
    ]
    if require_numeric_generic_code:
        rows = [row for row in rows if is_numeric_generic_code(row.generic_code)]
    return rows


def latest_stock_date(db: Session, *, on_or_before: date | None = None) -> date | None:
    query = select(func.max(StockSnapshotRecord.cutoff_date)).where(StockSnapshotRecord.quantity > 0)
    if on_or_before is not None:
        query = query.where(StockSnapshotRecord.cutoff_date <= on_or_before)
    return db.execute(query).scalar_one_or_none()


def _stock_rejection_reason(record: StockSnapshotRecord) -> str | None:
    if record.internal_code is None:
        return 'internal code is null'
    if record.generic_code is None:
        return 'generic code is null'
    if not record.generic_code.strip():
        return 'generic code is blank'
    if not is_numeric_generic_code(record.generic_code):
        return 'generic code is not numeric'
    return None


def stock_diagnostics(db: Session, cutoff_date: date) -> StockDiagnostics:
    report = StockDiagnostics(cutoff_date=cutoff_date)
    report.total = db.execute(
        select(func.count(StockSnapshotRecord.id)).where(StockSnapshotRecord.cutoff_date == cutoff_date)
    ).scalar_one()

    records = db.execute(
        select(StockSnapshotRecord)
        .where(StockSnapshotRecord.cutoff_date == cutoff_date, StockSnapshotRecord.quantity > 0)
        .order_by(StockSnapshotRecord.quantity.desc(), StockSnapshotRecord.id.asc())
    ).scalars().all()
    report.with_stock = len(records)

    for record in records:
        reason = _stock_rejection_reason(record)
        if reason is None:
            report.approved += 1
            continue
        if record.internal_code is None:
            report.missing_internal_code += 1
        elif record.generic_code is None:
            report.missing_generic_code += 1
        elif not record.generic_code.strip():
            report.blank_generic_code += 1
        else:
            report.non_numeric_generic_code += 1
        if len(report.rejected_examples) < DIAGNOSTIC_EXAMPLE_LIMIT:
            report.rejected_examples.append(
                {
                    'internal_code': record.internal_code,
                    'generic_code': record.generic_code,
                    'quantity': int(record.quantity),
                    'description': record.description,
                    'reason': reason,
                }
            )
    return report


def select_stock_rules(db: Session, cutoff_date: date) -> list[StockRuleRow]:
    rows = db.execute(
        select(
            StockSnapshotRecord.internal_code,
            func.max(StockSnapshotRecord.stock_min).label('stock_min'),
            func.max(StockSnapshotRecord.stock_max).label('stock_max'),
        )
        .where(
            StockSnapshotRecord.cutoff_date == cutoff_date,
            StockSnapshotRecord.internal_code.is_not(None),
            or_(StockSnapshotRecord.stock_min.is_not(None), StockSnapshotRecord.stock_max.is_not(None)),
        )
        .group_by(StockSnapshotRecord.internal_code)
        .order_by(StockSnapshotRecord.internal_code.asc())
    ).all()
    return [
        StockRuleRow(
            internal_code=row.internal_code,
            stock_min=int(row.stock_min or 0),
            stock_max=int(row.stock_max or 0),
        )
        for row in rows
    ]


def latest_rules_date(db: Session) -> date | None:
    return db.execute(
        select(func.max(StockSnapshotRecord.cutoff_date)).where(
            or_(StockSnapshotRecord.stock_min.is_not(None), StockSnapshotRecord.stock_max.is_not(None))
        )
    ).scalar_one_or_none()
