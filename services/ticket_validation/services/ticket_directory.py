"""Directorio de tickets: resuelve un QR decodificado al ticket autoritativo"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from datetime import datetime
from typing import Optional, Tuple
import logging

from shared.database.models import Ticket, TicketStatus
from shared.utils.timeutils import utcnow, ensure_utc
from services.ticket_validation.errors import AlreadyRedeemed, TicketNotFound

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TicketDirectory:
    """Lecturas del ticket y la única escritura condicional de redención"""

    @staticmethod
    async def find_by_payload(
        db: AsyncSession,
        event_id: str,
        ticket_number: int,
        asset_prefix: str
    ) -> Ticket:
        """
        Buscar ticket por los datos del QR.

        Primero por (event_id, ticket_number); si el ticket no tiene número
        registrado, fallback a asset_id que empiece con el prefijo dentro del
        evento. El prefijo no es único: el checksum posterior confirma.
        """
        stmt = select(Ticket).where(
            Ticket.event_id == event_id,
            Ticket.ticket_number == ticket_number
        )
        result = await db.execute(stmt)
        ticket = result.scalar_one_or_none()
        if ticket:
            return ticket

        stmt = (
            select(Ticket)
            .where(
                Ticket.event_id == event_id,
                Ticket.asset_id.like(f"{_escape_like(asset_prefix)}%", escape="\\")
            )
            .order_by(Ticket.purchased_at.asc())
            .limit(2)
        )
        result = await db.execute(stmt)
        candidates = result.scalars().all()

        if not candidates:
            raise TicketNotFound()

        if len(candidates) > 1:
            logger.warning(
                f"Prefijo de asset ambiguo en evento {event_id}: {asset_prefix} "
                f"(ticket #{ticket_number}), usando el más antiguo"
            )
        return candidates[0]

    @staticmethod
    async def find_by_id(db: AsyncSession, ticket_id: str) -> Ticket:
        """Obtener ticket por ID"""
        stmt = select(Ticket).where(Ticket.ticket_id == ticket_id)
        result = await db.execute(stmt)
        ticket = result.scalar_one_or_none()
        if not ticket:
            raise TicketNotFound()
        return ticket

    @staticmethod
    async def mark_used(
        db: AsyncSession,
        ticket_id: str,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
        used_at: Optional[datetime] = None
    ) -> datetime:
        """
        Transición ACTIVE -> USED como un único UPDATE condicional.

        Cero filas afectadas = ya redimido (o inexistente). Es el único punto
        de sincronización entre scanners concurrentes; no se hace flush ni
        commit aquí para que el llamador lo combine con el registro de
        verificación en la misma transacción.
        """
        used_at = used_at or utcnow()
        stmt = (
            update(Ticket)
            .where(
                Ticket.ticket_id == ticket_id,
                Ticket.status == expected_status.value
            )
            .values(status=TicketStatus.USED.value, used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            raise AlreadyRedeemed()
        return used_at

    @staticmethod
    async def get_redemption_state(
        db: AsyncSession,
        ticket_id: str
    ) -> Tuple[str, Optional[datetime]]:
        """Status y used_at actuales (para el mensaje "ya utilizado el ...")"""
        stmt = select(Ticket.status, Ticket.used_at).where(Ticket.ticket_id == ticket_id)
        result = await db.execute(stmt)
        row = result.one_or_none()
        if row is None:
            raise TicketNotFound()
        return row.status, ensure_utc(row.used_at)
