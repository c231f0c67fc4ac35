"""
Emisión de tickets: el lado que produce lo que el gate consume.

El ticket nace ACTIVE sin asset; cuando el mint se confirma en el ledger se
registra el asset_id y se genera el QR definitivo.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Optional
import logging

from shared.database.models import Event, EventState, Ticket, TicketStatus
from shared.utils.timeutils import utcnow
from services.ticket_validation.errors import TicketNotFound
from services.ticket_validation.services import payload_codec

logger = logging.getLogger(__name__)


class TicketIssuanceService:
    """Alta de tickets y registro del asset minteado"""

    @staticmethod
    async def issue_ticket(
        db: AsyncSession,
        event_id: str,
        holder_identity: str,
        purchase_price: int,
        ticket_number: Optional[int] = None
    ) -> Ticket:
        """
        Crear un ticket ACTIVE para el titular.

        Sin ticket_number se asigna el siguiente número del evento. La
        restricción única (event_id, ticket_number) protege contra dos
        emisiones concurrentes con el mismo número.
        """
        event = await db.get(Event, event_id)
        if not event:
            raise ValueError("Evento no encontrado")
        if event.state == EventState.CANCELLED.value:
            raise ValueError("El evento está cancelado")
        if purchase_price < 0:
            raise ValueError("purchase_price no puede ser negativo")

        stmt = select(
            func.count(Ticket.ticket_id),
            func.max(Ticket.ticket_number)
        ).where(Ticket.event_id == event_id)
        issued, last_number = (await db.execute(stmt)).one()

        if event.capacity and issued >= event.capacity:
            raise ValueError("No queda capacidad en el evento")

        if ticket_number is None:
            ticket_number = (last_number or 0) + 1
        elif ticket_number < 1:
            raise ValueError("ticket_number debe ser positivo")

        ticket = Ticket(
            event_id=event_id,
            ticket_number=ticket_number,
            holder_identity=holder_identity,
            purchase_price=purchase_price,
            status=TicketStatus.ACTIVE.value,
            purchased_at=utcnow(),
        )
        db.add(ticket)
        await db.commit()
        await db.refresh(ticket)

        logger.info(f"Ticket {ticket.ticket_id} emitido para evento {event_id} (#{ticket_number})")
        return ticket

    @staticmethod
    async def attach_asset(
        db: AsyncSession,
        ticket_id: str,
        asset_id: str,
        issued_at: Optional[int] = None
    ) -> Ticket:
        """Registrar el asset confirmado y generar el QR del ticket"""
        stmt = select(Ticket).where(Ticket.ticket_id == ticket_id)
        ticket = (await db.execute(stmt)).scalar_one_or_none()
        if not ticket:
            raise TicketNotFound()
        if ticket.asset_id and ticket.asset_id != asset_id:
            raise ValueError("El ticket ya tiene otro asset registrado")
        if ticket.ticket_number is None:
            raise ValueError("El ticket no tiene número asignado")

        ticket.asset_id = asset_id
        ticket.qr_data = payload_codec.encode(
            ticket.event_id,
            ticket.ticket_number,
            asset_id,
            issued_at=issued_at
        )
        await db.commit()

        logger.info(f"Asset {asset_id[:8]}... registrado para ticket {ticket_id}")
        return ticket
