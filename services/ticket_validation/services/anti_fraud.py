"""
Chequeos anti-fraude delante de la máquina de verificación.

Por defecto son advisory: se loguean y se anotan en la metadata del registro
pero no bloquean. Con ANTI_FRAUD_HARD_MODE pasan a rechazar. Son ortogonales
al chequeo de AlreadyRedeemed, que es permanente y vive en la base de datos.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, func, or_, select
from datetime import timedelta
from typing import List, Optional
import logging

from app.core.config import settings
from shared.database.models import GateVerification, Ticket, VerificationStatus
from shared.utils.timeutils import utcnow, unix_now
from services.ticket_validation.errors import DuplicateScanWindow, RateLimited

logger = logging.getLogger(__name__)


def _setting(value: Optional[int], default: int) -> int:
    # 0 es un valor explícito válido
    return default if value is None else value


class AntiFraudGuard:
    """Rate limit por operador, ventana de escaneo duplicado y frescura de QR"""

    def __init__(
        self,
        hard_mode: Optional[bool] = None,
        rate_window_seconds: Optional[int] = None,
        rate_max_scans: Optional[int] = None,
        duplicate_window_seconds: Optional[int] = None,
        freshness_seconds: Optional[int] = None,
        pending_expires_seconds: Optional[int] = None
    ):
        self.hard_mode = settings.ANTI_FRAUD_HARD_MODE if hard_mode is None else hard_mode
        self.rate_window_seconds = _setting(rate_window_seconds, settings.AGENT_RATE_WINDOW_SECONDS)
        self.rate_max_scans = _setting(rate_max_scans, settings.AGENT_RATE_MAX_SCANS)
        self.duplicate_window_seconds = _setting(duplicate_window_seconds, settings.DUPLICATE_SCAN_WINDOW_SECONDS)
        self.freshness_seconds = _setting(freshness_seconds, settings.QR_FRESHNESS_SECONDS)
        self.pending_expires_seconds = _setting(pending_expires_seconds, settings.GATE_SCAN_EXPIRES_SECONDS)

    async def check_agent_rate_limit(
        self,
        db: AsyncSession,
        agent_id: str,
        window_seconds: Optional[int] = None,
        max_scans: Optional[int] = None,
        advisories: Optional[List[str]] = None
    ) -> bool:
        """Contar registros creados por el operador en la ventana. False solo en modo hard."""
        window_seconds = _setting(window_seconds, self.rate_window_seconds)
        max_scans = _setting(max_scans, self.rate_max_scans)
        cutoff = utcnow() - timedelta(seconds=window_seconds)

        stmt = select(func.count(GateVerification.verification_id)).where(
            GateVerification.verifying_agent == agent_id,
            GateVerification.created_at >= cutoff
        )
        recent = (await db.execute(stmt)).scalar_one()

        if recent < max_scans:
            return True

        logger.warning(
            f"Operador {agent_id} superó {max_scans} escaneos en {window_seconds}s "
            f"({recent} registros){' - bloqueado' if self.hard_mode else ''}"
        )
        if advisories is not None:
            advisories.append(RateLimited.code)
        return not self.hard_mode

    async def check_duplicate_scan(
        self,
        db: AsyncSession,
        asset_id: str,
        window_seconds: Optional[int] = None,
        advisories: Optional[List[str]] = None
    ) -> bool:
        """
        False si el mismo asset tiene una verificación viva dentro de la ventana.

        Solo cuentan los registros VERIFIED y los PENDING que no expiraron:
        los REJECTED (incluidos los de este mismo chequeo) y las sesiones de
        escaneo vencidas no bloquean el re-escaneo.
        """
        window_seconds = _setting(window_seconds, self.duplicate_window_seconds)
        now = utcnow()
        cutoff = now - timedelta(seconds=window_seconds)
        pending_cutoff = max(cutoff, now - timedelta(seconds=self.pending_expires_seconds))

        stmt = (
            select(func.count(GateVerification.verification_id))
            .join(Ticket, GateVerification.ticket_id == Ticket.ticket_id)
            .where(
                Ticket.asset_id == asset_id,
                GateVerification.created_at >= cutoff,
                or_(
                    GateVerification.status == VerificationStatus.VERIFIED.value,
                    and_(
                        GateVerification.status == VerificationStatus.PENDING.value,
                        GateVerification.created_at >= pending_cutoff
                    )
                )
            )
        )
        recent = (await db.execute(stmt)).scalar_one()

        if recent == 0:
            return True

        logger.warning(f"Escaneo duplicado del asset {asset_id[:8]}... ({recent} en {window_seconds}s)")
        if advisories is not None:
            advisories.append(DuplicateScanWindow.code)
        return False

    def check_freshness(
        self,
        issued_at: int,
        max_age_seconds: Optional[int] = None,
        now: Optional[int] = None
    ) -> bool:
        """Anti-screenshot: solo para QR dinámicos recién generados"""
        max_age_seconds = _setting(max_age_seconds, self.freshness_seconds)
        now = unix_now() if now is None else now
        return (now - issued_at) <= max_age_seconds

    async def evaluate(
        self,
        db: AsyncSession,
        agent_id: str,
        asset_id: Optional[str]
    ) -> List[str]:
        """
        Correr los chequeos de la fase de scan que consultan la base de datos.

        La frescura del QR rotativo se valida antes, al decodificar.

        Returns:
            Lista de códigos advisory para la metadata del registro

        Raises:
            RateLimited, DuplicateScanWindow: solo en modo hard
        """
        advisories: List[str] = []

        if not await self.check_agent_rate_limit(db, agent_id, advisories=advisories):
            raise RateLimited()

        if asset_id:
            duplicate_free = await self.check_duplicate_scan(db, asset_id, advisories=advisories)
            if not duplicate_free and self.hard_mode:
                raise DuplicateScanWindow()

        return advisories
