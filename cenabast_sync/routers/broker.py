from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from cenabast_sync.config import settings
from cenabast_sync.db import get_db
from cenabast_sync.dependencies import get_client_ip
from cenabast_sync.schemas import TokenRequest
from cenabast_sync.services.audit_service import log_audit
from cenabast_sync.services.broker_client import BrokerSuccess
from cenabast_sync.services.broker_error_service import classify_outcome, format_for_user
from cenabast_sync.services.broker_factory import get_broker_client
from cenabast_sync.services.health_service import build_health_report
from cenabast_sync.services.payload_service import transform_movement_payload, transform_stock_payload
from cenabast_sync.services.scheduler_service import local_today
from cenabast_sync.services.selection_service import (
    diagnose_movements,
    latest_movement_date,
    latest_stock_date,
    parse_direction,
    select_movement_candidates,
    select_stock_candidates,
    stock_diagnostics,
)
from cenabast_sync.services.token_service import get_token_status, get_valid_token

router = APIRouter(prefix='/cenabast', tags=['cenabast'])


def _parse_date(request: Request, name: str = 'date') -> date | None:
    raw = request.query_params.get(name, '').strip()
    try:
        return date.fromisoformat(raw) if raw else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {name} filter') from exc


def _parse_relation(request: Request) -> int:
    raw = request.query_params.get('relation_id', '').strip()
    return int(raw) if raw.isdigit() else settings.default_relation_id


def _direction(request: Request):
    try:
        return parse_direction(request.query_params.get('direction', 'E'))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _mask(token: str) -> str:
    return f'{token[:12]}...' if len(token) > 12 else token


def _parse_period(request: Request) -> tuple[int, int]:
    month_raw = request.query_params.get('month', '').strip()
    year_raw = request.query_params.get('year', '').strip()
    if not month_raw or not year_raw:
        raise HTTPException(status_code=400, detail='month (1-12) and year (YYYY) are required')
    month = int(month_raw) if month_raw.isdigit() else 0
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail='Month must be between 1 and 12')
    year = int(year_raw) if year_raw.isdigit() else 0
    if not 2020 <= year <= 2100:
        raise HTTPException(status_code=400, detail='Year must be between 2020 and 2100')
    return month, year


def _requester(request: Request) -> str:
    return request.query_params.get('requester', '').strip() or settings.requester_rut


def _fetch_from_broker(db: Session, call) -> dict:
    info = get_valid_token(db)
    db.commit()
    if info is None:
        raise HTTPException(status_code=503, detail='Could not obtain a broker token')

    outcome = call(get_broker_client(), info.token)
    if not isinstance(outcome, BrokerSuccess):
        error = classify_outcome(outcome)
        raise HTTPException(status_code=502, detail={**error.as_dict(), 'summary': format_for_user(error)})
    return outcome.data


@router.get('/auth')
def token_status(db: Session = Depends(get_db)):
    return get_token_status(db)


@router.post('/auth/token')
def obtain_token(
    request: Request,
    body: TokenRequest | None = None,
    db: Session = Depends(get_db),
):
    body = body or TokenRequest()
    info = get_valid_token(db, force_new=body.force_new, allow_refresh=body.allow_refresh)
    if info is None:
        db.commit()
        raise HTTPException(status_code=503, detail='Could not obtain a broker token')

    log_audit(
        db,
        action='OBTENER_TOKEN',
        ip=get_client_ip(request),
        metadata={'source': info.source.value, 'force_new': body.force_new},
    )
    db.commit()
    return {
        'success': True,
        'token': _mask(info.token),
        'expires_at': info.expires_at.isoformat(),
        'source': info.source.value,
    }


@router.get('/health')
def health(db: Session = Depends(get_db)):
    return build_health_report(db)


@router.get('/diagnostics/stock')
def stock_diagnostics_report(request: Request, db: Session = Depends(get_db)):
    cutoff_date = _parse_date(request) or latest_stock_date(db)
    if cutoff_date is None:
        return {'cutoff_date': None, 'message': 'No stock snapshot available'}
    return stock_diagnostics(db, cutoff_date).as_dict()


@router.get('/diagnostics/movements')
def movement_diagnostics_report(request: Request, db: Session = Depends(get_db)):
    direction = _direction(request)
    day = _parse_date(request) or local_today()
    report = diagnose_movements(db, day, direction).as_dict()
    prior = latest_movement_date(db, direction, before=day)
    report['latest_prior_date'] = prior.isoformat() if prior else None
    return report


@router.get('/stock/preview')
def stock_preview(request: Request, db: Session = Depends(get_db)):
    cutoff_date = _parse_date(request) or latest_stock_date(db, on_or_before=local_today())
    if cutoff_date is None:
        raise HTTPException(status_code=404, detail='No stock snapshot available')
    rows = select_stock_candidates(db, cutoff_date)
    payload = transform_stock_payload(rows, relation_id=_parse_relation(request), cutoff_date=cutoff_date)
    return {'items': len(rows), 'payload': payload}


@router.get('/movements/preview')
def movement_preview(request: Request, db: Session = Depends(get_db)):
    direction = _direction(request)
    day = _parse_date(request) or local_today()
    channel = request.query_params.get('purchase_channel', 'C').strip().upper() or 'C'
    if channel not in ('C', 'M'):
        raise HTTPException(status_code=400, detail='Invalid purchase channel')

    selection = select_movement_candidates(db, day, direction)
    payload = transform_movement_payload(
        selection.rows,
        direction,
        relation_id=_parse_relation(request),
        movement_date=day,
        purchase_channel=channel,
    )
    return {
        'items': len(selection.rows),
        'diagnostics': selection.diagnostics.as_dict(),
        'payload': payload.data,
        'errors': payload.errors,
        'warnings': payload.warnings,
        'is_valid': payload.is_valid,
    }


@router.get('/products')
def catalog_products(request: Request, db: Session = Depends(get_db)):
    page_raw = request.query_params.get('page', '1').strip()
    size_raw = request.query_params.get('page_size', '100').strip()
    page = int(page_raw) if page_raw.isdigit() and int(page_raw) > 0 else 1
    page_size = min(int(size_raw), 500) if size_raw.isdigit() and int(size_raw) > 0 else 100

    data = _fetch_from_broker(db, lambda client, token: client.fetch_products(token, page=page, page_size=page_size))
    return {'page': page, 'page_size': page_size, 'data': data}


@router.get('/products/search')
def search_product(request: Request, db: Session = Depends(get_db)):
    name = request.query_params.get('name', '').strip()
    code = request.query_params.get('code', '').strip()
    if not name and not code:
        raise HTTPException(status_code=400, detail='Either name or code is required')

    data = _fetch_from_broker(db, lambda client, token: client.find_product(token, name=name or None, code=code or None))
    return {'name': name or None, 'code': code or None, 'data': data}


@router.get('/recipients')
def recipients(request: Request, db: Session = Depends(get_db)):
    requester = _requester(request)
    data = _fetch_from_broker(db, lambda client, token: client.fetch_recipients(token, requester=requester))
    return {'requester': requester, 'data': data}


@router.get('/stock/query')
def reported_stock(request: Request, db: Session = Depends(get_db)):
    month, year = _parse_period(request)
    requester = _requester(request)
    data = _fetch_from_broker(
        db, lambda client, token: client.query_stock(token, requester=requester, month=month, year=year)
    )
    return {'requester': requester, 'month': month, 'year': year, 'period': f'{month:02d}/{year}', 'data': data}


@router.get('/stock/rules')
def reported_stock_rules(request: Request, db: Session = Depends(get_db)):
    product_code = request.query_params.get('product_code', '').strip()
    if not product_code:
        raise HTTPException(status_code=400, detail='product_code is required')
    requester = _requester(request)
    relation_id = _parse_relation(request)

    data = _fetch_from_broker(
        db,
        lambda client, token: client.fetch_stock_rules(
            token, requester=requester, relation_id=relation_id, product_code=product_code
        ),
    )
    return {'requester': requester, 'relation_id': relation_id, 'product_code': product_code, 'data': data}


@router.get('/movements/query')
def reported_movements(request: Request, db: Session = Depends(get_db)):
    month, year = _parse_period(request)
    requester = _requester(request)
    data = _fetch_from_broker(
        db, lambda client, token: client.query_movements(token, requester=requester, month=month, year=year)
    )
    return {'requester': requester, 'month': month, 'year': year, 'period': f'{month:02d}/{year}', 'data': data}
