"""API Gateway del gate de Parchi - Punto de entrada de la aplicación"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from contextlib import asynccontextmanager
import logging

import httpx

from app.core.config import settings
from shared.database.connection import init_db, close_db, get_session_maker
from shared.cache.redis_client import init_redis, close_redis, get_redis, ping_redis
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler
from services.ticket_validation.errors import GateError, gate_error_handler
from services.ticket_validation.services.asset_oracle import build_asset_oracle

# Configurar logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events de la aplicación"""
    # Startup
    logger.info("Iniciando gate...")
    await init_db()
    await init_redis()
    oracle_client = httpx.AsyncClient(timeout=settings.ORACLE_TIMEOUT_SECONDS)
    app.state.asset_oracle = build_asset_oracle(oracle_client)
    logger.info(f"Gate iniciado (ledger: {settings.LEDGER_RPC_URL})")
    yield
    # Shutdown
    logger.info("Cerrando gate...")
    await oracle_client.aclose()
    await close_db()
    await close_redis()
    logger.info("Gate cerrado")


# Crear aplicación FastAPI
app = FastAPI(
    title="Parchi Gate API",
    description="Verificación y redención de tickets intransferibles en la entrada del evento",
    version="1.0.0",
    lifespan=lifespan
)

# CORS primero (antes de rate limiting)
if settings.APP_ENV == "development":
    logger.info("Modo desarrollo: CORS configurado para permitir todos los orígenes")
    allow_origins = ["*"]
    allow_credentials = False  # No se puede usar credentials con allow_origins=["*"]
else:
    allow_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    allow_credentials = True
    logger.info(f"CORS origins configurados: {allow_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight requests por 1 hora
)

# Rate limiting y errores del gate
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(GateError, gate_error_handler)

from services.ticket_validation.routes.validation import router as gate_router

app.include_router(gate_router, prefix="/api/v1/gate", tags=["gate"])


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok", "service": "parchi-gate"}


@app.get("/ready")
async def ready():
    """Ready check endpoint - verifica conexiones"""
    try:
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Ready check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "database": type(e).__name__})

    # Redis es solo cache: degradado, no caído
    await get_redis()
    redis_status = "connected" if await ping_redis() else "unavailable"
    return {"status": "ready", "database": "connected", "redis": redis_status}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )
