from __future__ import annotations

from functools import lru_cache

from cenabast_sync.config import settings
from cenabast_sync.services.broker_client import MirthBrokerClient
from cenabast_sync.services.mock_broker_client import MockBrokerClient


@lru_cache(maxsize=1)
def get_broker_client():
    provider = settings.broker_provider.strip().lower()
    if provider == 'mock':
        return MockBrokerClient()
    return MirthBrokerClient()
