from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from cenabast_sync.config import settings

logger = logging.getLogger(__name__)


class BrokerChannel(str, Enum):
    AUTH = 'auth'
    CATALOG = 'catalog'
    STOCK = 'stock'
    MOVEMENT = 'movement'


@dataclass(frozen=True)
class BrokerSuccess:
    status_code: int
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BrokerHttpFailure:
    status_code: int
    body: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BrokerSoftFailure:
    status_code: int
    body: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BrokerTransportFailure:
    message: str
    timed_out: bool = False


BrokerOutcome = BrokerSuccess | BrokerHttpFailure | BrokerSoftFailure | BrokerTransportFailure


def _decode_body(raw: bytes) -> dict:
    text = raw.decode('utf-8', errors='ignore').strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {'message': text}
    if isinstance(parsed, dict):
        return parsed
    return {'result': parsed}


def _is_timeout(reason: object) -> bool:
    return isinstance(reason, TimeoutError) or 'timed out' in str(reason).lower()


class MirthBrokerClient:
    def __init__(self, *, host: str | None = None, ports: dict[BrokerChannel, int] | None = None) -> None:
        self.host = (host or settings.broker_host).strip()
        self.ports = ports or {
            BrokerChannel.AUTH: settings.broker_auth_port,
            BrokerChannel.CATALOG: settings.broker_catalog_port,
            BrokerChannel.STOCK: settings.broker_stock_port,
            BrokerChannel.MOVEMENT: settings.broker_movement_port,
        }

    def url(self, channel: BrokerChannel, path: str) -> str:
        return f'http://{self.host}:{self.ports[channel]}{path}'

    def request(
        self,
        channel: BrokerChannel,
        path: str,
        *,
        method: str = 'GET',
        payload: dict | list | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ) -> BrokerOutcome:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if token:
            headers['Authorization'] = f'Bearer {token}'

        url = self.url(channel, path)
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = Request(url=url, data=data, headers=headers, method=method)
        timeout = timeout or settings.broker_submit_timeout_seconds
        logger.debug('Broker %s %s', method, url)

        try:
            with urlopen(req, timeout=timeout) as response:
                status_code = response.status
                body = _decode_body(response.read())
        except HTTPError as exc:
            body = _decode_body(exc.read()) if exc.fp else {}
            logger.warning('Broker HTTP %s on %s %s', exc.code, method, url)
            return BrokerHttpFailure(status_code=exc.code, body=body)
        except URLError as exc:
            logger.warning('Broker network error on %s %s: %s', method, url, exc.reason)
            return BrokerTransportFailure(message=f'Broker network error: {exc.reason}', timed_out=_is_timeout(exc.reason))
        except TimeoutError:
            logger.warning('Broker timeout after %ss on %s %s', timeout, method, url)
            return BrokerTransportFailure(message=f'Timeout: broker did not answer within {timeout}s', timed_out=True)
        except (OSError, HTTPException) as exc:
            logger.warning('Broker connection error on %s %s: %r', method, url, exc)
            return BrokerTransportFailure(message=f'Broker connection error: {exc!r}')

        # The broker wraps downstream failures in 200 responses.
        if body.get('isSuccessful') is False:
            logger.warning('Broker soft failure on %s %s: %s', method, url, body.get('errorMessage'))
            return BrokerSoftFailure(status_code=status_code, body=body)
        return BrokerSuccess(status_code=status_code, data=body)

    def request_token(self) -> BrokerOutcome:
        return self.request(
            BrokerChannel.AUTH,
            '/cenabast/auth/token',
            timeout=settings.broker_auth_timeout_seconds,
        )

    def login(self, *, user: str | None, password: str | None) -> BrokerOutcome:
        credentials = {'usuario': user, 'clave': password} if user and password else {}
        return self.request(
            BrokerChannel.AUTH,
            '/cenabast/auth/login',
            method='POST',
            payload=credentials,
            timeout=settings.broker_auth_timeout_seconds,
        )

    def refresh_token(self, token: str) -> BrokerOutcome:
        return self.request(
            BrokerChannel.AUTH,
            '/cenabast/auth/refresh',
            method='POST',
            token=token,
            timeout=settings.broker_refresh_timeout_seconds,
        )

    def fetch_products(self, token: str, *, page: int = 1, page_size: int = 100) -> BrokerOutcome:
        query = urlencode({'paginaActual': page, 'elementosPorPagina': page_size})
        return self.request(BrokerChannel.CATALOG, f'/cenabast/productos/paginados?{query}', token=token)

    def find_product(self, token: str, *, name: str | None = None, code: str | None = None) -> BrokerOutcome:
        params = {'nombre_producto': name} if name else {'codigo_producto': code}
        return self.request(BrokerChannel.CATALOG, f'/cenabast/producto?{urlencode(params)}', token=token)

    def fetch_recipients(self, token: str, *, requester: str) -> BrokerOutcome:
        query = urlencode({'solicitante': requester})
        return self.request(BrokerChannel.CATALOG, f'/cenabast/destinatarios?{query}', token=token)

    def query_stock(self, token: str, *, requester: str, month: int, year: int) -> BrokerOutcome:
        query = urlencode({'solicitante': requester, 'mes': month, 'anio': year})
        return self.request(BrokerChannel.STOCK, f'/cenabast/stock/consulta?{query}', token=token)

    def fetch_stock_rules(self, token: str, *, requester: str, relation_id: int, product_code: str) -> BrokerOutcome:
        query = urlencode({'solicitante': requester, 'idRelacion': relation_id, 'codigoProducto': product_code})
        return self.request(BrokerChannel.STOCK, f'/cenabast/stock/reglas?{query}', token=token)

    def query_movements(self, token: str, *, requester: str, month: int, year: int) -> BrokerOutcome:
        query = urlencode({'solicitante': requester, 'mes': month, 'anio': year})
        return self.request(BrokerChannel.MOVEMENT, f'/cenabast/movimiento/consulta?{query}', token=token)

    def submit_stock(self, token: str, payload: dict) -> BrokerOutcome:
        return self.request(BrokerChannel.STOCK, '/cenabast/stock/informar', method='POST', payload=payload, token=token)

    def submit_stock_rules(self, token: str, rules: list[dict]) -> BrokerOutcome:
        return self.request(BrokerChannel.STOCK, '/cenabast/stock/reglas', method='POST', payload=rules, token=token)

    def submit_movement(self, token: str, payload: dict) -> BrokerOutcome:
        return self.request(BrokerChannel.MOVEMENT, '/cenabast/movimiento', method='POST', payload=payload, token=token)

    def probe(self, channel: BrokerChannel) -> bool:
        outcome = self.request(channel, '/health', timeout=settings.broker_health_timeout_seconds)
        return isinstance(outcome, BrokerSuccess)
