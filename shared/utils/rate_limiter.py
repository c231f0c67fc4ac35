"""
Rate limiting HTTP usando slowapi + Redis.

Es la primera barrera por cliente; el límite por operador que cuenta
registros de verificación vive en AntiFraudGuard.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
import hashlib
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# memory:// en tests; en producción se comparte entre instancias vía Redis
RATE_LIMIT_STORAGE_URI = settings.RATE_LIMIT_STORAGE_URI or settings.REDIS_URL


def get_real_client_ip(request: Request) -> str:
    """
    Obtener IP real del cliente considerando proxies/load balancers.
    Importante para rate limiting correcto detrás de nginx/cloudflare.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # La primera IP es la del cliente
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


def get_scanner_identifier(request: Request) -> str:
    """
    Identificador para rate limiting: IP + hash del token.
    Varios scanners detrás del mismo NAT del recinto no se bloquean entre sí.
    """
    ip = get_real_client_ip(request)

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        # Hash del token para no exponer el token completo
        token_hash = hashlib.md5(auth_header.encode()).hexdigest()[:8]
        return f"{ip}:{token_hash}"

    return ip


limiter = Limiter(
    key_func=get_scanner_identifier,
    storage_uri=RATE_LIMIT_STORAGE_URI,
    strategy="fixed-window",
    headers_enabled=False,  # Deshabilitado para compatibilidad con response_model de FastAPI
)
logger.info(
    f"Rate limiter inicializado con storage: "
    f"{RATE_LIMIT_STORAGE_URI.split('@')[-1] if '@' in RATE_LIMIT_STORAGE_URI else RATE_LIMIT_STORAGE_URI}"
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Handler para rate limit exceeded, con el mismo formato que los errores del gate.
    """
    retry_after = "60"

    logger.warning(
        f"Rate limit exceeded - IP: {get_real_client_ip(request)}, "
        f"Path: {request.url.path}, "
        f"Limit: {exc.detail}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "ok": False,
            "error": "rate_limited",
            "detail": "Demasiadas solicitudes. Por favor espera antes de intentar nuevamente.",
            "retry_after_seconds": int(retry_after),
        },
        headers={"Retry-After": retry_after}
    )


# ============ RATE LIMITS PRE-DEFINIDOS ============

RATE_LIMITS = {
    # Scan/verify: un scanner en puerta hace ~1 lectura cada 2-3s
    "gate": "120/minute",

    # Health/ready y consultas públicas
    "public": "60/minute",
}
