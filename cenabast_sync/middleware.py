import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)


def install_request_logging(app: FastAPI) -> None:
    @app.middleware('http')
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started
        logger.info('%s %s - status %s - %.4fs', request.method, request.url.path, response.status_code, elapsed)
        return response
