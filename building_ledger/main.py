import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .api import apartments, collections, expenses, payments, subscriptions
from .config import Base, SessionLocal, engine, settings
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .core.request_context import REQUEST_ID_HEADER, assign_request_id
from .core.version import get_version_info
from .services.collections import ensure_default_stages

configure_logging(settings.log_level, json_logs=settings.log_json)
logger = logging.getLogger(__name__)

app = FastAPI(title="Building Ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.on_event("startup")
def startup() -> None:
    # In dev we make sure tables exist. Alembic migrations should be used for real schema evolution.
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_default_stages(session)


app.include_router(expenses.router, prefix="/expenses", tags=["expenses"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(apartments.router, prefix="/apartments", tags=["apartments"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
app.include_router(collections.router, prefix="/collections", tags=["collections"])


@app.get("/health", tags=["system"])
def health() -> dict:
    return {"status": "ok", **get_version_info()}


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = assign_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response
