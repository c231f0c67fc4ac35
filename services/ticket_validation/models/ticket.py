"""Modelos Pydantic para el gate"""
from pydantic import BaseModel, Field, field_serializer
from typing import Optional, List
from datetime import datetime


class ScanRequest(BaseModel):
    """Request de la fase de scan (lo que leyó la cámara del scanner)"""
    qr_string: str = Field(..., min_length=1, max_length=2048)
    gate_id: Optional[str] = None
    require_fresh: bool = False  # QR dinámico: exigir ventana anti-screenshot


class ScanResponse(BaseModel):
    ok: bool = True
    ticket_id: str
    verification_id: str
    event_id: str
    ticket_number: int
    expires_in_seconds: int
    advisories: List[str] = []


class VerifyRequest(BaseModel):
    """Request de la fase de verify. Al menos uno de los dos IDs."""
    verification_id: Optional[str] = None
    ticket_id: Optional[str] = None
    gate_id: Optional[str] = None


class VerifyResponse(BaseModel):
    ok: bool = True
    ticket_id: str
    verification_id: str
    used_at: Optional[datetime] = None
    idempotent: bool = False

    @field_serializer('used_at')
    def serialize_datetime(self, dt: Optional[datetime], _info) -> Optional[str]:
        return dt.isoformat() if dt else None


class VerificationRecordResponse(BaseModel):
    verification_id: str
    status: str
    verifying_agent: str
    location: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[str] = None
    verified_at: Optional[str] = None


class TicketStatusResponse(BaseModel):
    """Estado para re-consultar después de un StorageUnavailable"""
    ticket_id: str
    event_id: str
    ticket_number: Optional[int] = None
    holder_identity: str
    asset_id: Optional[str] = None
    status: str
    purchased_at: Optional[str] = None
    used_at: Optional[str] = None
    verifications: List[VerificationRecordResponse] = []
