from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from cenabast_sync.config import settings
from cenabast_sync.models import TaskKind
from cenabast_sync.services.audit_service import log_audit
from cenabast_sync.services.broker_client import BrokerOutcome, BrokerSuccess
from cenabast_sync.services.broker_error_service import ClassifiedError, classify_outcome, format_for_log
from cenabast_sync.services.payload_service import (
    transform_movement_payload,
    transform_stock_payload,
    transform_stock_rules_payload,
)
from cenabast_sync.services.selection_service import (
    MovementDirection,
    latest_movement_date,
    latest_rules_date,
    latest_stock_date,
    parse_direction,
    select_movement_candidates,
    select_stock_candidates,
    select_stock_rules,
)

logger = logging.getLogger(__name__)

VALIDATION_ERROR_CATEGORY = 'VALIDATION'


@dataclass
class SubmissionOutcome:
    kind: TaskKind
    success: bool
    effective_date: date | None = None
    items_sent: int = 0
    items_failed: int = 0
    message: str = ''
    error: ClassifiedError | None = None
    validation_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    response: dict | None = None
    fell_back: bool = False

    @property
    def error_category(self) -> str | None:
        if self.error is not None:
            return self.error.category.value
        if self.validation_errors:
            return VALIDATION_ERROR_CATEGORY
        return None

    @property
    def recoverable(self) -> bool | None:
        if self.error is not None:
            return self.error.recoverable
        if self.validation_errors:
            return False
        return None

    def response_detail(self) -> dict:
        detail: dict = {}
        if self.response is not None:
            detail['response'] = self.response
        if self.error is not None:
            detail['error'] = self.error.as_dict()
        if self.validation_errors:
            detail['validation_errors'] = self.validation_errors
        if self.warnings:
            detail['warnings'] = self.warnings
        if self.fell_back:
            detail['fell_back'] = True
        return detail


def _processed_message(count: int) -> str:
    return f'{count} items processed'


def _handle_broker_result(
    db: Session,
    *,
    kind: TaskKind,
    outcome: BrokerOutcome,
    item_count: int,
    effective_date: date,
    ok_action: str,
    error_action: str,
    metadata: dict,
) -> SubmissionOutcome:
    if isinstance(outcome, BrokerSuccess):
        log_audit(db, action=ok_action, metadata={**metadata, 'items': item_count})
        return SubmissionOutcome(
            kind=kind,
            success=True,
            effective_date=effective_date,
            items_sent=item_count,
            message=_processed_message(item_count),
            response=outcome.data,
        )

    error = classify_outcome(outcome)
    logger.warning('%s submission for %s failed: %s', kind.value, effective_date, format_for_log(error))
    log_audit(
        db,
        action=error_action,
        metadata={**metadata, 'items': item_count, 'category': error.category.value},
    )
    return SubmissionOutcome(
        kind=kind,
        success=False,
        effective_date=effective_date,
        items_failed=item_count,
        message=error.message,
        error=error,
    )


def submit_stock(
    db: Session,
    *,
    token: str,
    client,
    relation_id: int,
    cutoff_date: date | None = None,
    today: date | None = None,
) -> SubmissionOutcome:
    if cutoff_date is None:
        cutoff_date = latest_stock_date(db, on_or_before=today)
    if cutoff_date is None:
        return SubmissionOutcome(kind=TaskKind.STOCK, success=True, message='No stock snapshot available')

    rows = select_stock_candidates(db, cutoff_date)
    if not rows:
        logger.info('No eligible stock rows for %s', cutoff_date)
        return SubmissionOutcome(
            kind=TaskKind.STOCK, success=True, effective_date=cutoff_date, message=_processed_message(0)
        )

    payload = transform_stock_payload(rows, relation_id=relation_id, cutoff_date=cutoff_date)
    if payload['fecha_stock'] is None:
        return SubmissionOutcome(
            kind=TaskKind.STOCK,
            success=False,
            effective_date=cutoff_date,
            items_failed=len(rows),
            message='Validation failed, nothing was sent',
            validation_errors=[f'Invalid stock date: {cutoff_date}'],
        )

    outcome = client.submit_stock(token, payload)
    return _handle_broker_result(
        db,
        kind=TaskKind.STOCK,
        outcome=outcome,
        item_count=len(rows),
        effective_date=cutoff_date,
        ok_action='INFORMAR_STOCK_OK',
        error_action='INFORMAR_STOCK_ERROR',
        metadata={'fecha_stock': payload['fecha_stock'], 'id_relacion': relation_id},
    )


def submit_movements(
    db: Session,
    *,
    token: str,
    client,
    direction: str | MovementDirection,
    relation_id: int,
    movement_date: date,
    purchase_channel: str = 'C',
) -> SubmissionOutcome:
    direction = parse_direction(direction)
    kind = TaskKind.MOVEMENT_INBOUND if direction == MovementDirection.INBOUND else TaskKind.MOVEMENT_OUTBOUND

    selection = select_movement_candidates(db, movement_date, direction)
    fell_back = False
    if not selection.rows:
        fallback_date = latest_movement_date(db, direction, before=movement_date)
        if fallback_date is None:
            logger.info('No eligible %s movements on or before %s', direction.value, movement_date)
            return SubmissionOutcome(
                kind=kind, success=True, effective_date=movement_date, message=_processed_message(0)
            )
        logger.info('No eligible %s movements on %s, falling back to %s', direction.value, movement_date, fallback_date)
        movement_date = fallback_date
        fell_back = True
        selection = select_movement_candidates(db, movement_date, direction)

    payload = transform_movement_payload(
        selection.rows,
        direction,
        relation_id=relation_id,
        movement_date=movement_date,
        purchase_channel=purchase_channel,
    )
    if not payload.is_valid:
        logger.warning('Movement payload for %s rejected: %d errors', movement_date, len(payload.errors))
        return SubmissionOutcome(
            kind=kind,
            success=False,
            effective_date=movement_date,
            items_failed=len(selection.rows),
            message='Validation failed, nothing was sent',
            validation_errors=payload.errors,
            warnings=payload.warnings,
            fell_back=fell_back,
        )

    outcome = client.submit_movement(token, payload.data)
    result = _handle_broker_result(
        db,
        kind=kind,
        outcome=outcome,
        item_count=len(selection.rows),
        effective_date=movement_date,
        ok_action='INFORMAR_MOVIMIENTO_OK',
        error_action='INFORMAR_MOVIMIENTO_ERROR',
        metadata={
            'fecha_movimiento': payload.data['fecha_movimiento'],
            'tipo_movimiento': direction.value,
            'id_relacion': relation_id,
        },
    )
    result.warnings = payload.warnings
    result.fell_back = fell_back
    return result


def submit_stock_rules(
    db: Session,
    *,
    token: str,
    client,
    relation_id: int,
    cutoff_date: date | None = None,
) -> SubmissionOutcome:
    if cutoff_date is None:
        cutoff_date = latest_rules_date(db)
    if cutoff_date is None:
        return SubmissionOutcome(kind=TaskKind.STOCK_RULES, success=True, message='No stock rules available')

    rules = select_stock_rules(db, cutoff_date)
    if not rules:
        return SubmissionOutcome(
            kind=TaskKind.STOCK_RULES, success=True, effective_date=cutoff_date, message=_processed_message(0)
        )

    payload = transform_stock_rules_payload(rules, relation_id=relation_id, requester_rut=settings.requester_rut)
    if not payload.is_valid:
        return SubmissionOutcome(
            kind=TaskKind.STOCK_RULES,
            success=False,
            effective_date=cutoff_date,
            items_failed=len(rules),
            message='Validation failed, nothing was sent',
            validation_errors=payload.errors,
        )

    outcome = client.submit_stock_rules(token, payload.rules)
    return _handle_broker_result(
        db,
        kind=TaskKind.STOCK_RULES,
        outcome=outcome,
        item_count=len(rules),
        effective_date=cutoff_date,
        ok_action='SET_REGLAS_STOCK',
        error_action='SET_REGLAS_STOCK_ERROR',
        metadata={'id_relacion': relation_id},
    )
