import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from app.config import settings
from app.routers import events, ingest, reports, venues
from app.security.headers import install_security_headers

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='Venue Revenue Reconciliation')

install_security_headers(app)

app.include_router(ingest.router)
app.include_router(venues.router)
app.include_router(reports.router)
app.include_router(events.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
