"""Circuit breaker para dependencias externas (ledger RPC)"""
from enum import Enum
from datetime import datetime, timezone
from typing import Callable, Any, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal
    OPEN = "open"  # Fallar rápido sin llamar
    HALF_OPEN = "half_open"  # Una sola llamada de prueba


class CircuitOpenError(Exception):
    """El circuito está abierto; la llamada no se intentó"""


class CircuitBreaker:
    """
    Circuit breaker por dependencia.

    En HALF_OPEN deja pasar una única llamada de prueba; las concurrentes
    fallan rápido hasta que la prueba termina. Solo `expected_exception`
    cuenta como fallo: un "asset no existe" es una respuesta válida.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: type = Exception,
        name: str = "circuit"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = CircuitState.CLOSED
        self._probe_in_flight = False

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Ejecutar func a través del circuito"""
        self._before_call()

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except BaseException:
            # Respuesta válida pero negativa (o cancelación): no es fallo del servicio
            self._release_probe()
            raise

        self._on_success()
        return result

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
        }

    def _before_call(self):
        if self.state == CircuitState.OPEN:
            if not self._recovery_elapsed():
                raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN")
            logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
            self.state = CircuitState.HALF_OPEN

        if self.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(f"Circuit breaker {self.name} is HALF_OPEN (probe in flight)")
            self._probe_in_flight = True

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    def _release_probe(self):
        self._probe_in_flight = False

    def _on_success(self):
        self._release_probe()
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED")
            self.state = CircuitState.CLOSED

    def _on_failure(self):
        self._release_probe()
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"Circuit {self.name}: abierto tras {self.failure_count} fallos")
            self.state = CircuitState.OPEN
