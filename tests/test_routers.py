from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from db_support import make_session_factory

from cenabast_sync.config import settings
from cenabast_sync.db import get_db
from cenabast_sync.main import app
from cenabast_sync.services.broker_client import BrokerHttpFailure
from cenabast_sync.services.mock_broker_client import MockBrokerClient


class RouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()

        def _get_db():
            yield self.db

        app.dependency_overrides[get_db] = _get_db
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    @patch('cenabast_sync.services.health_service.get_broker_client', return_value=MockBrokerClient())
    def test_health_always_answers_200(self, _client_mock) -> None:
        response = self.client.get('/cenabast/health')

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['components']['database']['status'], 'ok')
        self.assertEqual(body['components']['token']['status'], 'error')
        self.assertEqual(body['components']['broker']['status'], 'ok')
        self.assertEqual(body['status'], 'degraded')

    def test_token_status_without_token(self) -> None:
        response = self.client.get('/cenabast/auth')

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['has_token'])

    @patch('cenabast_sync.routers.scheduler.run_due_tasks', return_value=[])
    def test_cron_requires_secret_in_production(self, run_mock) -> None:
        with patch.object(settings, 'app_env', 'production'):
            denied = self.client.get('/cenabast/scheduler/execute')
            allowed = self.client.get(
                '/cenabast/scheduler/execute',
                headers={'Authorization': f'Bearer {settings.cron_secret}'},
            )

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()['executed'], 0)
        run_mock.assert_called_once()

    @patch('cenabast_sync.routers.scheduler.run_due_tasks', return_value=[])
    def test_cron_is_open_outside_production(self, _run_mock) -> None:
        response = self.client.get('/cenabast/scheduler/execute')

        self.assertEqual(response.status_code, 200)

    def test_task_lifecycle(self) -> None:
        created = self.client.post(
            '/cenabast/scheduler',
            json={'name': 'Daily stock', 'kind': 'STOCK', 'run_time': '08:00', 'weekdays': [1, 3, 5]},
        )
        self.assertEqual(created.status_code, 200)
        task_id = created.json()['id']
        self.assertEqual(created.json()['weekdays'], [1, 3, 5])
        self.assertIsNotNone(created.json()['next_run_at'])

        updated = self.client.put(f'/cenabast/scheduler/{task_id}', json={'purchase_channel': 'm'})
        self.assertEqual(updated.json()['purchase_channel'], 'M')

        listed = self.client.get('/cenabast/scheduler').json()['tasks']
        self.assertEqual([task['id'] for task in listed], [task_id])
        self.assertEqual(listed[0]['success_count'], 0)

        removed = self.client.delete(f'/cenabast/scheduler/{task_id}')
        self.assertFalse(removed.json()['active'])
        self.assertEqual(self.client.delete('/cenabast/scheduler/999').status_code, 404)

    def test_invalid_task_payload_is_rejected(self) -> None:
        response = self.client.post(
            '/cenabast/scheduler',
            json={'name': 'Bad', 'kind': 'STOCK', 'run_time': '08:00', 'weekdays': [9]},
        )

        self.assertEqual(response.status_code, 422)

    def test_manual_execution_needs_task_or_kind(self) -> None:
        self.assertEqual(self.client.post('/cenabast/scheduler/execute', json={}).status_code, 400)
        self.assertEqual(self.client.post('/cenabast/scheduler/execute', json={'task_id': 42}).status_code, 404)

    @patch('cenabast_sync.routers.broker.get_broker_client', return_value=MockBrokerClient())
    @patch('cenabast_sync.routers.broker.get_valid_token', return_value=SimpleNamespace(token='tok'))
    def test_products_passthrough(self, _token_mock, _client_mock) -> None:
        response = self.client.get('/cenabast/products?page=2&page_size=10')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['page'], 2)
        self.assertTrue(response.json()['data']['isSuccessful'])

    @patch('cenabast_sync.routers.broker.get_valid_token', return_value=None)
    def test_products_without_token(self, _token_mock) -> None:
        self.assertEqual(self.client.get('/cenabast/products').status_code, 503)

    @patch('cenabast_sync.routers.broker.get_broker_client', return_value=MockBrokerClient())
    @patch('cenabast_sync.routers.broker.get_valid_token', return_value=SimpleNamespace(token='tok'))
    def test_reported_stock_and_movements_by_period(self, _token_mock, _client_mock) -> None:
        stock = self.client.get('/cenabast/stock/query?month=3&year=2024')
        movements = self.client.get('/cenabast/movements/query?month=12&year=2024&requester=76000000')

        self.assertEqual(stock.status_code, 200)
        self.assertEqual(stock.json()['period'], '03/2024')
        self.assertEqual(stock.json()['requester'], settings.requester_rut)
        self.assertEqual(movements.json()['requester'], '76000000')
        self.assertTrue(movements.json()['data']['isSuccessful'])

    def test_period_queries_validate_month_and_year(self) -> None:
        for query in ('', 'month=3', 'month=13&year=2024', 'month=0&year=2024', 'month=3&year=2019', 'month=3&year=2101'):
            self.assertEqual(self.client.get(f'/cenabast/stock/query?{query}').status_code, 400, query)
        self.assertEqual(self.client.get('/cenabast/movements/query?month=x&year=2024').status_code, 400)

    def test_rules_and_product_lookups_need_a_key(self) -> None:
        self.assertEqual(self.client.get('/cenabast/stock/rules').status_code, 400)
        self.assertEqual(self.client.get('/cenabast/products/search').status_code, 400)

    @patch('cenabast_sync.routers.broker.get_valid_token', return_value=SimpleNamespace(token='tok'))
    def test_broker_failure_is_reported_with_suggestions(self, _token_mock) -> None:
        client = MagicMock()
        client.fetch_stock_rules.return_value = BrokerHttpFailure(status_code=404, body={'message': 'Not Found'})

        with patch('cenabast_sync.routers.broker.get_broker_client', return_value=client):
            response = self.client.get('/cenabast/stock/rules?product_code=A1&relation_id=7')

        self.assertEqual(response.status_code, 502)
        detail = response.json()['detail']
        self.assertEqual(detail['category'], 'NOT_FOUND')
        self.assertFalse(detail['recoverable'])
        self.assertIn('Suggestions:', detail['summary'])
        self.assertEqual(client.fetch_stock_rules.call_args[1]['relation_id'], 7)

    def test_logs_reject_bad_filters(self) -> None:
        self.assertEqual(self.client.get('/cenabast/scheduler/logs?from=yesterday').status_code, 400)
        self.assertEqual(self.client.get('/cenabast/scheduler/logs?state=LOST').status_code, 400)
        self.assertEqual(self.client.get('/cenabast/scheduler/logs').json()['total'], 0)


if __name__ == '__main__':
    unittest.main()
