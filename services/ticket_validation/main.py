"""Service entry point para el gate (sin el resto del gateway)"""
from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager

import httpx

from app.core.config import settings
from shared.database.connection import init_db, close_db
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler
from services.ticket_validation.errors import GateError, gate_error_handler
from services.ticket_validation.routes.validation import router
from services.ticket_validation.services.asset_oracle import build_asset_oracle


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    async with httpx.AsyncClient(timeout=settings.ORACLE_TIMEOUT_SECONDS) as client:
        app.state.asset_oracle = build_asset_oracle(client)
        yield
    await close_db()


app = FastAPI(title="Parchi Gate Service", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(GateError, gate_error_handler)
app.include_router(router, prefix="/api/v1/gate", tags=["gate"])
