from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from cenabast_sync.config import settings
from cenabast_sync.models import CachedToken, TokenSource
from cenabast_sync.services.broker_client import BrokerSuccess
from cenabast_sync.services.broker_factory import get_broker_client

logger = logging.getLogger(__name__)

TOKEN_ROW_ID = 1
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class TokenInfo:
    token: str
    expires_at: datetime
    issued_at: datetime
    source: TokenSource


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _max_ttl() -> timedelta:
    return timedelta(minutes=settings.token_max_ttl_minutes)


def _buffer() -> timedelta:
    return timedelta(minutes=settings.token_refresh_buffer_minutes)


def effective_expiry(expires_at: datetime, issued_at: datetime) -> datetime:
    return min(_as_utc(expires_at), _as_utc(issued_at) + _max_ttl())


def is_stale(expires_at: datetime, issued_at: datetime, *, now: datetime | None = None) -> bool:
    now = _as_utc(now or _now())
    return effective_expiry(expires_at, issued_at) - _buffer() <= now


def _load(db: Session) -> CachedToken | None:
    return db.execute(select(CachedToken).where(CachedToken.id == TOKEN_ROW_ID)).scalar_one_or_none()


def _to_info(row: CachedToken, source: TokenSource) -> TokenInfo:
    return TokenInfo(
        token=row.token,
        expires_at=_as_utc(row.expires_at),
        issued_at=_as_utc(row.issued_at),
        source=source,
    )


def _persist(db: Session, *, token: str, expires_in: int, source: TokenSource, now: datetime) -> TokenInfo:
    expires_at = now + min(timedelta(seconds=max(expires_in, 0)), _max_ttl())
    row = _load(db)
    if row is None:
        row = CachedToken(id=TOKEN_ROW_ID, token=token, expires_at=expires_at, issued_at=now, source=source)
        db.add(row)
    else:
        row.token = token
        row.expires_at = expires_at
        row.issued_at = now
        row.source = source
    db.flush()
    logger.info('Stored %s broker token, expires at %s', source.value.lower(), expires_at.isoformat())
    return TokenInfo(token=token, expires_at=expires_at, issued_at=now, source=source)


def _extract_token(data: dict) -> tuple[str | None, int]:
    token = data.get('token') or data.get('jwt') or data.get('access_token')
    expires_in = data.get('expires_in') or data.get('expiresIn') or DEFAULT_EXPIRES_IN_SECONDS
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN_SECONDS
    return token, expires_in


def _try_refresh(db: Session, client, current: CachedToken, now: datetime) -> TokenInfo | None:
    outcome = client.refresh_token(current.token)
    if not isinstance(outcome, BrokerSuccess):
        logger.warning('Broker token refresh failed: %s', outcome)
        return None
    token, expires_in = _extract_token(outcome.data)
    return _persist(db, token=token or current.token, expires_in=expires_in, source=TokenSource.REFRESH, now=now)


def _try_issue(db: Session, client, now: datetime) -> TokenInfo | None:
    outcome = client.request_token()
    if isinstance(outcome, BrokerSuccess):
        token, expires_in = _extract_token(outcome.data)
        if token:
            return _persist(db, token=token, expires_in=expires_in, source=TokenSource.FRESH, now=now)

    outcome = client.login(user=settings.broker_auth_user, password=settings.broker_auth_password)
    if isinstance(outcome, BrokerSuccess):
        token, expires_in = _extract_token(outcome.data)
        if token:
            return _persist(db, token=token, expires_in=expires_in, source=TokenSource.FRESH, now=now)

    logger.warning('Broker token issuance failed: %s', outcome)
    return None


def get_valid_token(
    db: Session,
    *,
    force_new: bool = False,
    allow_refresh: bool = True,
    allow_fake: bool | None = None,
    client=None,
    now: datetime | None = None,
) -> TokenInfo | None:
    """Return a usable broker token, or None when none can be obtained.

    Order: cached token, refresh of the cached token, fresh issuance, then a
    simulated token when the environment allows it. Every successful path
    overwrites the single stored token row.
    """
    now = _as_utc(now or _now())
    client = client or get_broker_client()
    if allow_fake is None:
        allow_fake = settings.allow_fake_token

    current = _load(db)
    if current is not None and not force_new and not is_stale(current.expires_at, current.issued_at, now=now):
        return _to_info(current, TokenSource.CACHE)

    if current is not None and allow_refresh:
        refreshed = _try_refresh(db, client, current, now)
        if refreshed:
            return refreshed

    issued = _try_issue(db, client, now)
    if issued:
        return issued

    if allow_fake:
        logger.warning('Broker unavailable, using a simulated token. Submissions will not reach CENABAST.')
        fake = f'dev-fake-token-{int(now.timestamp() * 1000)}'
        return _persist(db, token=fake, expires_in=DEFAULT_EXPIRES_IN_SECONDS, source=TokenSource.SIMULATED, now=now)

    logger.error('No valid broker token could be obtained')
    return None


def get_token_status(db: Session, *, now: datetime | None = None) -> dict:
    now = _as_utc(now or _now())
    current = _load(db)
    if current is None:
        return {
            'has_token': False,
            'is_expired': True,
            'expires_at': None,
            'hours_remaining': 0.0,
            'source': None,
            'message': 'No token stored',
        }

    expires_at = effective_expiry(current.expires_at, current.issued_at)
    is_expired = expires_at <= now
    hours_remaining = max((expires_at - now).total_seconds() / 3600, 0.0)
    if is_expired:
        message = 'Token expired'
    else:
        message = f'Token valid for {hours_remaining:.1f} more hours'
    return {
        'has_token': True,
        'is_expired': is_expired,
        'expires_at': expires_at.isoformat(),
        'hours_remaining': round(hours_remaining, 2),
        'source': current.source.value,
        'message': message,
    }
