from __future__ import annotations

import secrets

from cenabast_sync.services.broker_client import BrokerChannel, BrokerOutcome, BrokerSuccess


def _envelope(result: object) -> dict:
    return {'statusCode': 200, 'isSuccessful': True, 'result': result}


class MockBrokerClient:
    def __init__(self) -> None:
        self.host = 'mock'
        self.submissions: list[tuple[str, object]] = []

    def request_token(self) -> BrokerOutcome:
        return BrokerSuccess(status_code=200, data={'token': f'mock-{secrets.token_hex(16)}', 'expires_in': 3600})

    def login(self, *, user: str | None, password: str | None) -> BrokerOutcome:
        return self.request_token()

    def refresh_token(self, token: str) -> BrokerOutcome:
        return BrokerSuccess(status_code=200, data={'token': token, 'expires_in': 3600})

    def fetch_products(self, token: str, *, page: int = 1, page_size: int = 100) -> BrokerOutcome:
        return BrokerSuccess(status_code=200, data=_envelope([]))

    def find_product(self, token: str, *, name: str | None = None, code: str | None = None) -> BrokerOutcome:
        return BrokerSuccess(status_code=200, data=_envelope([]))

    def fetch_recipients(self, token: str, *, requester: str) -> BrokerOutcome:
        return BrokerSuccess(status_code=200, data=_envelope([]))

    def query_stock(self, token: str, *, requester: str, month: int, year: int) -> BrokerOutcome:
        reported = [payload for kind, payload in self.submissions if kind == 'stock']
        return BrokerSuccess(status_code=200, data=_envelope(reported))

    def fetch_stock_rules(self, token: str, *, requester: str, relation_id: int, product_code: str) -> BrokerOutcome:
        rules = [
            rule
            for kind, batch in self.submissions
            if kind == 'rules'
            for rule in batch
            if str(rule.get('CodigoProducto')) == str(product_code)
        ]
        return BrokerSuccess(status_code=200, data=_envelope(rules))

    def query_movements(self, token: str, *, requester: str, month: int, year: int) -> BrokerOutcome:
        reported = [payload for kind, payload in self.submissions if kind == 'movement']
        return BrokerSuccess(status_code=200, data=_envelope(reported))

    def submit_stock(self, token: str, payload: dict) -> BrokerOutcome:
        self.submissions.append(('stock', payload))
        return BrokerSuccess(status_code=200, data=_envelope(f"{len(payload['stock_detalle'])} items received"))

    def submit_stock_rules(self, token: str, rules: list[dict]) -> BrokerOutcome:
        self.submissions.append(('rules', rules))
        return BrokerSuccess(status_code=200, data=_envelope(f'{len(rules)} rules received'))

    def submit_movement(self, token: str, payload: dict) -> BrokerOutcome:
        self.submissions.append(('movement', payload))
        return BrokerSuccess(status_code=200, data=_envelope(f"{len(payload['movimiento_detalle'])} items received"))

    def probe(self, channel: BrokerChannel) -> bool:
        return True
