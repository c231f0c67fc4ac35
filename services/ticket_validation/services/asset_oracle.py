"""
Adaptador de solo lectura al ledger (DAS JSON-RPC `getAsset`).

El ledger es la cadena de custodia del ticket intransferible, pero para la
redención es un chequeo secundario: OracleUnavailable es un fallo soft y la
base de datos sigue siendo la autoridad. AssetNotFound es un fallo hard.

La instancia se construye en el composition root (lifespan de main.py) con
un httpx.AsyncClient propio y se inyecta en el servicio de verificación.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional
import logging

import httpx

from app.core.config import settings
from shared.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from shared.cache.redis_client import cache_get, cache_key, cache_set
from services.ticket_validation.errors import AssetNotFound, OracleUnavailable

logger = logging.getLogger(__name__)

CLAIMED_ATTRIBUTE = "claimed"


@dataclass(frozen=True)
class AssetSnapshot:
    asset_id: str
    owner: Optional[str]
    is_frozen: bool
    attributes: Dict[str, str] = field(default_factory=dict)

    def to_cache(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "owner": self.owner,
            "is_frozen": self.is_frozen,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_cache(cls, data: dict) -> "AssetSnapshot":
        return cls(
            asset_id=data["asset_id"],
            owner=data.get("owner"),
            is_frozen=bool(data.get("is_frozen")),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )


def is_soulbound(snapshot: AssetSnapshot) -> bool:
    """True si el asset está congelado (permanent freeze delegate)"""
    return snapshot.is_frozen


def get_attribute(snapshot: AssetSnapshot, key: str) -> Optional[str]:
    return snapshot.attributes.get(key)


def is_claimed(snapshot: AssetSnapshot) -> bool:
    """Espejo on-chain del check-in. Nunca decide la redención."""
    return get_attribute(snapshot, CLAIMED_ATTRIBUTE) == "true"


def _mapping(value, field_name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Campo {field_name} con formato inválido")
    return value


def parse_das_asset(asset_id: str, result: dict) -> AssetSnapshot:
    """
    Convertir la respuesta `getAsset` del DAS API a AssetSnapshot.

    Raises:
        ValueError: algún campo no tiene el tipo esperado
    """
    result = _mapping(result, "result")
    ownership = _mapping(result.get("ownership"), "ownership")
    plugins = _mapping(result.get("plugins"), "plugins")

    freeze_plugin = _mapping(plugins.get("permanent_freeze_delegate"), "permanent_freeze_delegate")
    freeze_data = _mapping(freeze_plugin.get("data"), "permanent_freeze_delegate.data")
    is_frozen = bool(ownership.get("frozen")) or bool(freeze_data.get("frozen"))

    attributes_plugin = _mapping(plugins.get("attributes"), "attributes")
    attribute_list = _mapping(attributes_plugin.get("data"), "attributes.data").get("attribute_list") or []
    if not isinstance(attribute_list, list):
        raise ValueError("Campo attribute_list con formato inválido")

    attributes = {}
    for attribute in attribute_list:
        attribute = _mapping(attribute, "attribute")
        key = attribute.get("key")
        if key is None:
            continue
        attributes[str(key)] = str(attribute.get("value", ""))

    owner = ownership.get("owner")
    if owner is not None and not isinstance(owner, str):
        raise ValueError("Campo owner con formato inválido")

    return AssetSnapshot(
        asset_id=str(result.get("id") or asset_id),
        owner=owner,
        is_frozen=is_frozen,
        attributes=attributes,
    )


class AssetOracle:
    """Cliente del ledger con timeout explícito, circuit breaker y cache corto"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        rpc_url: str,
        timeout_seconds: float = 3.0,
        breaker: Optional[CircuitBreaker] = None,
        cache_seconds: int = 0
    ):
        self.client = client
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30,
            expected_exception=OracleUnavailable,
            name="asset-oracle"
        )
        self.cache_seconds = cache_seconds

    async def fetch_asset(self, asset_id: str) -> AssetSnapshot:
        """
        Obtener el estado actual del asset.

        Raises:
            AssetNotFound: el ledger respondió que el asset no existe
            OracleUnavailable: timeout, error de red, respuesta inválida o circuito abierto
        """
        cached = await self._cache_lookup(asset_id)
        if cached:
            return cached

        try:
            snapshot = await self.breaker.call(self._rpc_get_asset, asset_id)
        except CircuitOpenError as e:
            logger.debug(f"Ledger omitido por circuit breaker: {self.breaker.snapshot()}")
            raise OracleUnavailable(str(e))

        await self._cache_store(snapshot)
        return snapshot

    async def _rpc_get_asset(self, asset_id: str) -> AssetSnapshot:
        request_body = {
            "jsonrpc": "2.0",
            "id": "parchi-gate",
            "method": "getAsset",
            "params": {"id": asset_id},
        }

        try:
            response = await self.client.post(
                self.rpc_url,
                json=request_body,
                timeout=self.timeout_seconds
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout consultando asset {asset_id} en el ledger: {e}")
            raise OracleUnavailable("Timeout consultando el ledger")
        except httpx.RequestError as e:
            logger.warning(f"Error de conexión con el ledger para asset {asset_id}: {e}")
            raise OracleUnavailable("Error de conexión con el ledger")

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"Ledger respondió {response.status_code} para asset {asset_id}")
            raise OracleUnavailable(f"Ledger respondió {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise OracleUnavailable("Respuesta del ledger no es JSON")

        if not isinstance(data, dict):
            raise OracleUnavailable("Respuesta del ledger con formato inválido")

        error = data.get("error")
        if error:
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            if "not found" in message.lower():
                raise AssetNotFound(f"Asset {asset_id} no existe en el ledger")
            logger.warning(f"Error RPC del ledger para asset {asset_id}: {message}")
            raise OracleUnavailable(f"Error RPC del ledger: {message}")

        if response.status_code != 200:
            raise OracleUnavailable(f"Ledger respondió {response.status_code}")

        result = data.get("result")
        if not result:
            raise AssetNotFound(f"Asset {asset_id} no existe en el ledger")
        if not isinstance(result, dict):
            logger.warning(f"Respuesta del ledger para asset {asset_id} sin objeto result")
            raise OracleUnavailable("Respuesta del ledger con formato inválido")
        if result.get("burnt"):
            raise AssetNotFound(f"Asset {asset_id} no existe en el ledger")

        try:
            return parse_das_asset(asset_id, result)
        except ValueError as e:
            logger.warning(f"No se pudo interpretar el asset {asset_id} del ledger: {e}")
            raise OracleUnavailable(f"Respuesta del ledger con formato inválido: {e}")

    async def _cache_lookup(self, asset_id: str) -> Optional[AssetSnapshot]:
        if not self.cache_seconds:
            return None
        try:
            cached = await cache_get(cache_key("asset", asset_id))
        except Exception as e:
            logger.warning(f"Cache de assets no disponible: {e}")
            return None
        return AssetSnapshot.from_cache(cached) if isinstance(cached, dict) else None

    async def _cache_store(self, snapshot: AssetSnapshot):
        if not self.cache_seconds:
            return
        try:
            await cache_set(cache_key("asset", snapshot.asset_id), snapshot.to_cache(), expire=self.cache_seconds)
        except Exception as e:
            logger.warning(f"No se pudo cachear asset {snapshot.asset_id}: {e}")


def build_asset_oracle(client: httpx.AsyncClient) -> AssetOracle:
    """Oráculo del ledger según settings, con su propio circuit breaker"""
    breaker = CircuitBreaker(
        failure_threshold=settings.ORACLE_FAILURE_THRESHOLD,
        recovery_timeout=settings.ORACLE_RECOVERY_TIMEOUT,
        expected_exception=OracleUnavailable,
        name="asset-oracle"
    )
    return AssetOracle(
        client=client,
        rpc_url=settings.LEDGER_RPC_URL,
        timeout_seconds=settings.ORACLE_TIMEOUT_SECONDS,
        breaker=breaker,
        cache_seconds=settings.ORACLE_CACHE_SECONDS
    )
