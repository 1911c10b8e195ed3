import secrets

from fastapi import HTTPException, Request

from cenabast_sync.config import settings


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def require_cron_secret(request: Request) -> None:
    if not settings.is_production:
        return
    expected = f'Bearer {settings.cron_secret}'
    provided = request.headers.get('authorization', '')
    if not secrets.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        raise HTTPException(status_code=401, detail='Unauthorized')
