"""Rutas del gate: scan, verify y consultas de estado"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
from io import BytesIO

from shared.database.session import get_db, get_session_maker
from shared.auth.dependencies import get_current_scanner, get_current_user
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_validation.models.ticket import (
    ScanRequest,
    ScanResponse,
    VerifyRequest,
    VerifyResponse,
    TicketStatusResponse,
)
from services.ticket_validation.services import payload_codec
from services.ticket_validation.services.ticket_directory import TicketDirectory
from services.ticket_validation.services.verification_service import GateVerificationService, storage_guard

STAFF_ROLES = ['scanner', 'admin', 'coordinator']

router = APIRouter()


def get_verification_service(request: Request) -> GateVerificationService:
    """Armar el servicio con el oráculo creado en el lifespan"""
    return GateVerificationService(
        session_maker=get_session_maker(),
        oracle=getattr(request.app.state, "asset_oracle", None),
    )


@router.post("/scan", response_model=ScanResponse)
@limiter.limit(RATE_LIMITS["gate"])
async def scan_ticket(
    request: Request,  # Necesario para rate limiter
    body: ScanRequest,
    current_user: Dict = Depends(get_current_scanner),
    service: GateVerificationService = Depends(get_verification_service)
):
    """
    Fase 1: leer el QR y abrir una sesión de verificación

    No cambia el status del ticket. Requiere rol scanner/admin/coordinator.
    """
    result = await service.scan(
        qr_string=body.qr_string,
        agent_id=current_user['user_id'],
        gate_id=body.gate_id,
        require_fresh=body.require_fresh
    )
    return ScanResponse(
        ticket_id=result.ticket_id,
        verification_id=result.verification_id,
        event_id=result.event_id,
        ticket_number=result.ticket_number,
        expires_in_seconds=result.expires_in_seconds,
        advisories=result.advisories,
    )


@router.post("/verify", response_model=VerifyResponse)
@limiter.limit(RATE_LIMITS["gate"])
async def verify_ticket(
    request: Request,  # Necesario para rate limiter
    body: VerifyRequest,
    current_user: Dict = Depends(get_current_scanner),
    service: GateVerificationService = Depends(get_verification_service)
):
    """
    Fase 2: redimir el ticket (ACTIVE -> USED, a lo más una vez)

    Reintentar con el mismo verification_id es seguro: devuelve el mismo
    resultado con idempotent=true.
    """
    result = await service.verify(
        agent_id=current_user['user_id'],
        verification_id=body.verification_id,
        ticket_id=body.ticket_id,
        gate_id=body.gate_id
    )
    return VerifyResponse(
        ticket_id=result.ticket_id,
        verification_id=result.verification_id,
        used_at=result.used_at,
        idempotent=result.idempotent,
    )


@router.get("/tickets/{ticket_id}", response_model=TicketStatusResponse)
async def get_ticket_status(
    ticket_id: str,
    current_user: Dict = Depends(get_current_scanner),
    service: GateVerificationService = Depends(get_verification_service)
):
    """Estado del ticket y su historial de verificaciones"""
    return TicketStatusResponse(**await service.get_ticket_status(ticket_id))


@router.get("/tickets/{ticket_id}/qr.png")
async def get_ticket_qr(
    ticket_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """
    Imagen PNG del QR del ticket

    Solo el titular o el staff. 404 si el mint aún no se confirmó.
    """
    async with storage_guard("get_ticket_qr"):
        ticket = await TicketDirectory.find_by_id(db, ticket_id)

    if current_user.get('user_id') != ticket.holder_identity:
        if current_user.get('role') not in STAFF_ROLES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='No puedes ver tickets de otros usuarios'
            )

    if not ticket.qr_data:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='El QR del ticket aún no está disponible'
        )

    png = payload_codec.render_qr_png(ticket.qr_data)
    return StreamingResponse(
        BytesIO(png),
        media_type="image/png",
        headers={"Cache-Control": "private, max-age=300"}
    )
