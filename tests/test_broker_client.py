from __future__ import annotations

import io
import json
import unittest
from http.client import IncompleteRead, RemoteDisconnected
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

from cenabast_sync.services.broker_client import (
    BrokerChannel,
    BrokerHttpFailure,
    BrokerSoftFailure,
    BrokerSuccess,
    BrokerTransportFailure,
    MirthBrokerClient,
)


def _response(body: dict, status: int = 200) -> MagicMock:
    handle = MagicMock()
    handle.__enter__.return_value = SimpleNamespace(status=status, read=lambda: json.dumps(body).encode('utf-8'))
    return handle


class MirthBrokerClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = MirthBrokerClient(host='broker.local')

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_success_sends_bearer_json_to_channel_port(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _response({'statusCode': 200, 'isSuccessful': True, 'result': 'ok'})

        outcome = self.client.submit_stock('tok', {'id_relacion': 1, 'stock_detalle': []})

        self.assertIsInstance(outcome, BrokerSuccess)
        request = urlopen_mock.call_args[0][0]
        self.assertEqual(request.full_url, 'http://broker.local:6663/cenabast/stock/informar')
        self.assertEqual(request.get_method(), 'POST')
        self.assertEqual(request.get_header('Authorization'), 'Bearer tok')
        self.assertEqual(json.loads(request.data), {'id_relacion': 1, 'stock_detalle': []})
        self.assertEqual(urlopen_mock.call_args[1]['timeout'], 30)

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_flagged_200_is_a_soft_failure(self, urlopen_mock) -> None:
        body = {'statusCode': 500, 'isSuccessful': False, 'errorMessage': 'Cannot insert NULL'}
        urlopen_mock.return_value = _response(body)

        outcome = self.client.submit_movement('tok', {'movimiento_detalle': []})

        self.assertIsInstance(outcome, BrokerSoftFailure)
        self.assertEqual(outcome.status_code, 200)
        self.assertEqual(outcome.body, body)

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_http_error_keeps_body(self, urlopen_mock) -> None:
        urlopen_mock.side_effect = HTTPError(
            'http://broker.local:6661/cenabast/auth/token', 401, 'Unauthorized', {}, io.BytesIO(b'{"error": "bad token"}')
        )

        outcome = self.client.request_token()

        self.assertEqual(outcome, BrokerHttpFailure(status_code=401, body={'error': 'bad token'}))
        self.assertEqual(urlopen_mock.call_args[1]['timeout'], 12)

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_timeout_and_connection_errors(self, urlopen_mock) -> None:
        urlopen_mock.side_effect = TimeoutError('timed out')
        timed_out = self.client.refresh_token('tok')

        urlopen_mock.side_effect = URLError(ConnectionRefusedError('refused'))
        refused = self.client.submit_stock_rules('tok', [])

        self.assertIsInstance(timed_out, BrokerTransportFailure)
        self.assertTrue(timed_out.timed_out)
        self.assertIsInstance(refused, BrokerTransportFailure)
        self.assertFalse(refused.timed_out)

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_dropped_connections_are_transport_failures(self, urlopen_mock) -> None:
        for exc in (
            RemoteDisconnected('Remote end closed connection without response'),
            ConnectionResetError(104, 'Connection reset by peer'),
            IncompleteRead(b'{"statusCode"'),
        ):
            urlopen_mock.side_effect = exc

            outcome = self.client.submit_stock('tok', {'stock_detalle': []})

            self.assertIsInstance(outcome, BrokerTransportFailure)
            self.assertFalse(outcome.timed_out)

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_read_back_queries_use_channel_ports(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _response({'statusCode': 200, 'isSuccessful': True, 'result': []})

        self.client.query_stock('tok', requester='61980320', month=3, year=2024)
        stock_url = urlopen_mock.call_args[0][0].full_url
        self.client.query_movements('tok', requester='61980320', month=3, year=2024)
        movement_url = urlopen_mock.call_args[0][0].full_url
        self.client.fetch_stock_rules('tok', requester='61980320', relation_id=7, product_code='A1')
        rules_url = urlopen_mock.call_args[0][0].full_url
        self.client.find_product('tok', code='100000122')
        product_url = urlopen_mock.call_args[0][0].full_url

        self.assertEqual(stock_url, 'http://broker.local:6663/cenabast/stock/consulta?solicitante=61980320&mes=3&anio=2024')
        self.assertEqual(
            movement_url, 'http://broker.local:6664/cenabast/movimiento/consulta?solicitante=61980320&mes=3&anio=2024'
        )
        self.assertEqual(
            rules_url, 'http://broker.local:6663/cenabast/stock/reglas?solicitante=61980320&idRelacion=7&codigoProducto=A1'
        )
        self.assertEqual(product_url, 'http://broker.local:6662/cenabast/producto?codigo_producto=100000122')

    @patch('cenabast_sync.services.broker_client.urlopen')
    def test_probe_reports_reachability(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _response({'status': 'ok'})
        self.assertTrue(self.client.probe(BrokerChannel.CATALOG))
        self.assertEqual(urlopen_mock.call_args[0][0].full_url, 'http://broker.local:6662/health')

        urlopen_mock.side_effect = URLError('unreachable')
        self.assertFalse(self.client.probe(BrokerChannel.CATALOG))


if __name__ == '__main__':
    unittest.main()
