from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime

from cenabast_sync.services.identifier_service import (
    normalize_digits,
    normalize_generic_code,
    normalize_tax_id,
)
from cenabast_sync.services.selection_service import (
    MovementDirection,
    MovementRow,
    StockRuleRow,
    StockSnapshotRow,
    normalize_document_type,
    parse_direction,
)

# Range accepted by the receiving SQL Server DATETIME columns.
MIN_ACCEPTED_DATE = date(1753, 1, 1)
MAX_ACCEPTED_DATE = date(9999, 12, 31)

DOCUMENT_NUMBER_FIELDS = {
    'FACTURA': 'nro_factura',
    'GUIA DESPACHO': 'nro_guia_despacho',
}

_ISO_DATE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})')


@dataclass
class MovementPayload:
    data: dict
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class StockRulesPayload:
    rules: list[dict]
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def sanitize_date(value: object) -> str | None:
    """Return YYYY-MM-DD when the value is a real calendar date in the accepted range."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        match = _ISO_DATE.match(str(value).strip())
        if not match:
            return None
        try:
            parsed = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None
    if parsed < MIN_ACCEPTED_DATE or parsed > MAX_ACCEPTED_DATE:
        return None
    return parsed.isoformat()


def _as_int(value: object) -> int:
    if value is None or value == '':
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def transform_stock_item(row: StockSnapshotRow) -> dict:
    return {
        'codigo_interno': str(row.internal_code or ''),
        'codigo_generico': normalize_generic_code(row.generic_code),
        'cantidad_stock': max(_as_int(row.quantity), 0),
        'codigo_despacho': 0,
        'descripcion_producto': row.description or '',
    }


def transform_stock_payload(
    rows: Iterable[StockSnapshotRow],
    *,
    relation_id: int,
    cutoff_date: date | str,
) -> dict:
    return {
        'id_relacion': int(relation_id),
        'fecha_stock': sanitize_date(cutoff_date),
        'stock_detalle': [transform_stock_item(row) for row in rows],
    }


def movement_row_to_item(row: MovementRow) -> dict:
    item = {
        'codigo_interno': row.internal_code,
        'codigo_generico': row.generic_code,
        'cantidad': row.quantity,
        'lote': row.lot_number,
        'fecha_vencimiento': row.expiry_date,
        'rut_proveedor': row.counterparty_id,
    }
    number_field = DOCUMENT_NUMBER_FIELDS.get(normalize_document_type(row.document_type))
    if number_field:
        item[number_field] = row.document_number
    return item


def _as_mapping(row: MovementRow | Mapping) -> Mapping:
    if isinstance(row, MovementRow):
        return movement_row_to_item(row)
    return row


def transform_movement_item(item: Mapping) -> dict:
    internal_code = item.get('codigo_interno')
    transformed: dict = {
        'codigo_interno': str(internal_code).strip() if internal_code is not None else '',
        'codigo_generico': normalize_generic_code(item.get('codigo_generico')),
        'cantidad': abs(_as_int(item.get('cantidad'))),
    }

    lot = item.get('lote')
    if lot is not None and str(lot).strip():
        transformed['lote'] = str(lot).strip()

    expiry = sanitize_date(item.get('fecha_vencimiento'))
    if expiry:
        transformed['fecha_vencimiento'] = expiry

    supplier = normalize_tax_id(item.get('rut_proveedor'))
    if supplier:
        transformed['rut_proveedor'] = supplier

    # Exactly one document number field is populated.
    invoice = normalize_digits(item.get('nro_factura'))
    dispatch_note = normalize_digits(item.get('nro_guia_despacho'))
    if invoice:
        transformed['nro_factura'] = invoice
    elif dispatch_note:
        transformed['nro_guia_despacho'] = dispatch_note

    dispatch_code = normalize_digits(item.get('codigo_despacho'))
    if dispatch_code:
        transformed['codigo_despacho'] = dispatch_code

    return transformed


def validate_movement_item(item: Mapping) -> list[str]:
    errors: list[str] = []
    if not item.get('codigo_interno'):
        errors.append('codigo_interno is required')
    if not item.get('cantidad') or item['cantidad'] <= 0:
        errors.append(f"Product {item.get('codigo_interno') or '?'}: cantidad must be greater than 0")
    return errors


def transform_movement_payload(
    rows: Iterable[MovementRow | Mapping],
    direction: str | MovementDirection,
    *,
    relation_id: int | None = None,
    movement_date: date | str | None = None,
    purchase_channel: str = 'C',
) -> MovementPayload:
    direction = parse_direction(direction)
    errors: list[str] = []
    warnings: list[str] = []
    detail: list[dict] = []

    for row in rows:
        item = transform_movement_item(_as_mapping(row))
        errors.extend(validate_movement_item(item))
        if item['codigo_generico'] == 0:
            warnings.append(
                f"Product {item['codigo_interno'] or '?'}: codigo_generico is 0 and will likely be rejected"
            )
        detail.append(item)

    data = {
        'id_relacion': int(relation_id) if relation_id is not None else None,
        'fecha_movimiento': sanitize_date(movement_date),
        'tipo_movimiento': direction.value,
        'tipo_compra': (purchase_channel or 'C').upper(),
        'movimiento_detalle': detail,
    }
    return MovementPayload(data=data, errors=errors, warnings=warnings)


def transform_stock_rules_payload(
    rules: Iterable[StockRuleRow],
    *,
    relation_id: int,
    requester_rut: str,
) -> StockRulesPayload:
    payload: list[dict] = []
    errors: list[str] = []
    for rule in rules:
        stock_min = max(_as_int(rule.stock_min), 0)
        stock_max = max(_as_int(rule.stock_max), 0)
        if stock_min > stock_max:
            errors.append(f'Product {rule.internal_code}: StockMinimo {stock_min} > StockMaximo {stock_max}')
        payload.append(
            {
                'RutSolicitante': str(requester_rut),
                'IdRelacion': int(relation_id),
                'CodigoProducto': str(rule.internal_code),
                'StockMinimo': stock_min,
                'StockMaximo': stock_max,
            }
        )
    return StockRulesPayload(rules=payload, errors=errors)
