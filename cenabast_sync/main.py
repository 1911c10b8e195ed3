import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from cenabast_sync.config import settings
from cenabast_sync.middleware import install_request_logging
from cenabast_sync.routers import broker, scheduler

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='CENABAST Sync')

install_request_logging(app)

app.include_router(broker.router)
app.include_router(scheduler.router)


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'


if __name__ == '__main__':
    import uvicorn

    uvicorn.run('cenabast_sync.main:app', host='0.0.0.0', port=8000)
