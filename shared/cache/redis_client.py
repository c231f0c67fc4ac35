"""
Cliente Redis del gate.

Solo guarda lecturas cortas del ledger (snapshots de assets). Nada de lo que
decide una redención vive aquí: si Redis no está, el gate sigue funcionando.
"""
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
import json
from typing import Optional, Any
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None

CACHE_PREFIX = "parchi:gate"


def cache_key(namespace: str, identifier: str) -> str:
    """Clave con prefijo del servicio, p.ej. parchi:gate:asset:<id>"""
    return f"{CACHE_PREFIX}:{namespace}:{identifier}"


async def init_redis():
    """Crear el pool; un Redis caído se loguea pero no impide arrancar"""
    global redis_client, redis_pool

    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        password=settings.REDIS_PASSWORD or None,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=2,  # Cache: fallar rápido, nunca frenar la fila del gate
        socket_timeout=2,
        socket_keepalive=True,
        health_check_interval=30,
    )
    redis_client = redis.Redis(connection_pool=redis_pool)

    if await ping_redis():
        logger.info(f"Redis conectado (pool max_connections={settings.REDIS_MAX_CONNECTIONS})")


async def get_redis() -> redis.Redis:
    """Obtener cliente Redis"""
    if redis_client is None:
        await init_redis()
    return redis_client


async def ping_redis() -> bool:
    try:
        await redis_client.ping()
        return True
    except (redis.RedisError, OSError) as e:
        logger.error(f"Redis no responde: {e}")
        return False


async def close_redis():
    """Cerrar conexión a Redis y pool"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
    logger.info("Redis desconectado")


async def cache_get(key: str) -> Optional[Any]:
    """Leer un valor JSON; None si no existe o no es JSON"""
    redis_conn = await get_redis()
    value = await redis_conn.get(key)
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning(f"Valor no JSON en cache ({key}), ignorado")
        return None


async def cache_set(key: str, value: Any, expire: int):
    """Guardar un valor JSON con TTL obligatorio"""
    redis_conn = await get_redis()
    await redis_conn.setex(key, expire, json.dumps(value))
