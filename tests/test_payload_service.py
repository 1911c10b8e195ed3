from __future__ import annotations

import unittest
from datetime import date

from cenabast_sync.services.payload_service import (
    sanitize_date,
    transform_movement_payload,
    transform_stock_payload,
    transform_stock_rules_payload,
)
from cenabast_sync.services.selection_service import MovementRow, StockRuleRow, StockSnapshotRow


def _row(**overrides) -> MovementRow:
    values = {
        'movement_date': date(2024, 12, 9),
        'quantity': -12,
        'internal_code': 'P-1',
        'generic_code': '100000122',
        'document_type': 'Factura',
        'document_number': 'F-698201',
        'counterparty_id': '96.519.830-K',
        'lot_number': ' L-77 ',
        'expiry_date': date(2026, 5, 31),
    }
    values.update(overrides)
    return MovementRow(**values)


class StockPayloadTests(unittest.TestCase):
    def test_non_numeric_generic_code_becomes_zero(self) -> None:
        rows = [
            StockSnapshotRow(internal_code='A1', generic_code='100000122', quantity=50),
            StockSnapshotRow(internal_code='A3', generic_code='abc', quantity=10),
        ]

        payload = transform_stock_payload(rows, relation_id=7, cutoff_date=date(2024, 12, 9))

        self.assertEqual(payload['id_relacion'], 7)
        self.assertEqual(payload['fecha_stock'], '2024-12-09')
        self.assertEqual([item['codigo_generico'] for item in payload['stock_detalle']], [100000122, 0])
        self.assertEqual([item['cantidad_stock'] for item in payload['stock_detalle']], [50, 10])


class MovementPayloadTests(unittest.TestCase):
    def test_transforms_fields_to_receiving_types(self) -> None:
        payload = transform_movement_payload(
            [_row()], 'S', relation_id=3, movement_date=date(2024, 12, 9), purchase_channel='m'
        )

        self.assertTrue(payload.is_valid)
        self.assertEqual(payload.data['tipo_movimiento'], 'S')
        self.assertEqual(payload.data['tipo_compra'], 'M')
        self.assertEqual(payload.data['fecha_movimiento'], '2024-12-09')
        self.assertEqual(
            payload.data['movimiento_detalle'],
            [
                {
                    'codigo_interno': 'P-1',
                    'codigo_generico': 100000122,
                    'cantidad': 12,
                    'lote': 'L-77',
                    'fecha_vencimiento': '2026-05-31',
                    'rut_proveedor': 96519830,
                    'nro_factura': 698201,
                }
            ],
        )

    def test_dispatch_note_uses_its_own_number_field(self) -> None:
        payload = transform_movement_payload([_row(document_type='GUIA DESPACHO', document_number='5512')], 'E')

        item = payload.data['movimiento_detalle'][0]
        self.assertEqual(item['nro_guia_despacho'], 5512)
        self.assertNotIn('nro_factura', item)

    def test_optional_fields_are_omitted(self) -> None:
        payload = transform_movement_payload(
            [_row(lot_number='  ', expiry_date=None, counterparty_id='11-101', document_number='0')], 'E'
        )

        item = payload.data['movimiento_detalle'][0]
        self.assertEqual(set(item), {'codigo_interno', 'codigo_generico', 'cantidad'})

    def test_missing_code_and_zero_quantity_are_errors(self) -> None:
        payload = transform_movement_payload([_row(internal_code=None), _row(quantity=0)], 'E')

        self.assertFalse(payload.is_valid)
        self.assertEqual(len(payload.errors), 2)

    def test_zero_generic_code_is_only_a_warning(self) -> None:
        payload = transform_movement_payload([_row(generic_code='')], 'E')

        self.assertTrue(payload.is_valid)
        self.assertEqual(len(payload.warnings), 1)

    def test_transform_is_idempotent(self) -> None:
        first = transform_movement_payload(
            [_row(), _row(document_type='GUIA DESPACHO', lot_number=None)],
            'S',
            relation_id=1,
            movement_date=date(2024, 12, 9),
        )
        second = transform_movement_payload(
            first.data['movimiento_detalle'],
            first.data['tipo_movimiento'],
            relation_id=first.data['id_relacion'],
            movement_date=first.data['fecha_movimiento'],
            purchase_channel=first.data['tipo_compra'],
        )

        self.assertEqual(second.data, first.data)
        self.assertEqual(second.errors, first.errors)


class SanitizeDateTests(unittest.TestCase):
    def test_out_of_range_and_invalid_dates_are_dropped(self) -> None:
        self.assertIsNone(sanitize_date('1700-01-01'))
        self.assertIsNone(sanitize_date('2024-02-30'))
        self.assertIsNone(sanitize_date('not a date'))
        self.assertIsNone(sanitize_date(None))
        self.assertEqual(sanitize_date('2024-02-29T00:00:00'), '2024-02-29')


class StockRulesPayloadTests(unittest.TestCase):
    def test_min_above_max_is_an_error(self) -> None:
        payload = transform_stock_rules_payload(
            [StockRuleRow(internal_code='A1', stock_min=10, stock_max=5), StockRuleRow('A2', 1, 4)],
            relation_id=2,
            requester_rut='61980320',
        )

        self.assertFalse(payload.is_valid)
        self.assertEqual(len(payload.errors), 1)
        self.assertEqual(
            payload.rules[1],
            {'RutSolicitante': '61980320', 'IdRelacion': 2, 'CodigoProducto': 'A2', 'StockMinimo': 1, 'StockMaximo': 4},
        )


if __name__ == '__main__':
    unittest.main()
