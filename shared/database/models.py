"""Modelos SQLAlchemy del gate de Parchi"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from enum import Enum
import uuid
from shared.database.connection import Base
from shared.utils.timeutils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class EventState(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class TicketStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class Event(Base):
    """Evento. Lo administra el servicio de eventos; el gate solo lo lee."""
    __tablename__ = "events"

    event_id = Column(String, primary_key=True)
    organizer_identity = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    capacity = Column(Integer, nullable=False, default=0)
    collection_id = Column(String(44), nullable=True, unique=True)  # Colección en el ledger
    state = Column(String, nullable=False, default=EventState.DRAFT.value)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relaciones
    tickets = relationship("Ticket", back_populates="event")


class Ticket(Base):
    """Credencial de entrada no transferible"""
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("event_id", "ticket_number", name="uq_tickets_event_number"),
        Index("ix_tickets_event_asset", "event_id", "asset_id"),
    )

    ticket_id = Column(String, primary_key=True, default=_new_id)
    event_id = Column(String, ForeignKey("events.event_id"), nullable=False, index=True)
    ticket_number = Column(Integer, nullable=True)
    holder_identity = Column(String, nullable=False, index=True)
    asset_id = Column(String(44), nullable=True)  # NULL hasta que se confirme el mint
    purchase_price = Column(BigInteger, nullable=False, default=0)
    status = Column(String, nullable=False, default=TicketStatus.ACTIVE.value, index=True)
    purchased_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    qr_data = Column(String, nullable=True)

    # Relaciones
    event = relationship("Event", back_populates="tickets")
    verifications = relationship("GateVerification", back_populates="ticket")


class GateVerification(Base):
    """Registro de auditoría de un intento de check-in en el gate"""
    __tablename__ = "gate_verifications"

    verification_id = Column(String, primary_key=True, default=_new_id)
    event_id = Column(String, ForeignKey("events.event_id"), nullable=False, index=True)
    ticket_id = Column(String, ForeignKey("tickets.ticket_id"), nullable=False, index=True)
    verifying_agent = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=VerificationStatus.PENDING.value, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    location = Column(String, nullable=True)  # gate_id
    reason = Column(String, nullable=True)  # Código de rechazo
    meta = Column(JSON, nullable=False, default=dict)  # map<str, str>, ver verification_meta
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    # Relaciones
    ticket = relationship("Ticket", back_populates="verifications")
