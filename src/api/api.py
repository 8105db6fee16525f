import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from api.dependencies import get_engine
from config import config
from db.db import init_db
from domain.accounts import Account, AccountRef
from domain.errors import NotFound, StoreUnavailable, ValidationError
from domain.ledger import LedgerEntry
from services.balance_engine import BalanceEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    settings = config()
    database = init_db(settings)
    fastapi_app.state.engine = BalanceEngine(database, lock_timeout=settings.lock_timeout_seconds)
    yield
    database.dispose()


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = perf_counter()
    response = await call_next(request)
    process_time = perf_counter() - start_time
    logger.info("Request time: %s %s: %.4fs", request.method, request.url, process_time)
    return response


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/users/{user_id}/accounts")
def get_user_accounts(
    user_id: str,
    engine: Annotated[BalanceEngine, Depends(get_engine)],
    include_retired: bool = False,
) -> list[Account]:
    return engine.list_accounts(user_id, include_retired=include_retired)


@app.get("/accounts/{user_id}/{currency}/{wallet_type}")
def get_account(
    user_id: str, currency: str, wallet_type: str, engine: Annotated[BalanceEngine, Depends(get_engine)]
) -> Account:
    return engine.get_account(AccountRef.of(user_id, currency, wallet_type))


@app.get("/accounts/{user_id}/{currency}/{wallet_type}/entries")
def get_account_entries(
    user_id: str, currency: str, wallet_type: str, engine: Annotated[BalanceEngine, Depends(get_engine)]
) -> list[LedgerEntry]:
    _, entries = engine.account_statement(AccountRef.of(user_id, currency, wallet_type))
    return entries
