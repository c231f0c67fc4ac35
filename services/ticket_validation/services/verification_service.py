"""
Máquina de verificación del gate.

Dos fases, igual que los dos endpoints del scanner:

- scan: decodifica el QR, resuelve el ticket, valida checksum y estado,
  aplica los chequeos anti-fraude y crea un registro PENDING. No toca el
  status del ticket.
- verify: re-resuelve el ticket, consulta el ledger (fuera de cualquier
  transacción) y en una transacción corta ejecuta el UPDATE condicional
  ACTIVE -> USED junto con el registro VERIFIED.

Estados lógicos del ticket:

    ACTIVE --scan ok--> PENDING_VERIFICATION --verify ok--> VERIFIED (terminal)
    PENDING_VERIFICATION --fallo hard--> REJECTED (el ticket sigue ACTIVE)
    ACTIVE --mark_used pierde--> REJECTED(already_redeemed)

verify por verification_id es idempotente: si ese registro ya está VERIFIED
devuelve el mismo resultado. verify por ticket_id sin verification_id no lo
es: la segunda llamada falla con AlreadyRedeemed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from contextlib import asynccontextmanager
import json
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from shared.database.models import GateVerification, Ticket, TicketStatus, VerificationStatus
from shared.utils.retry import retry_with_backoff
from shared.utils.timeutils import ensure_utc, isoformat, utcnow
from services.ticket_validation.errors import (
    AlreadyRedeemed,
    AssetAttributeMismatch,
    AssetNotFound,
    Expired,
    GateError,
    MalformedPayload,
    NotSoulbound,
    OracleUnavailable,
    StorageBusy,
    StorageUnavailable,
    TicketNotActive,
    VerificationNotFound,
    VerificationTicketMismatch,
    error_from_code,
)
from services.ticket_validation.services import payload_codec
from services.ticket_validation.services.anti_fraud import AntiFraudGuard
from services.ticket_validation.services.asset_oracle import (
    AssetOracle,
    get_attribute,
    is_claimed,
    is_soulbound,
)
from services.ticket_validation.services.ticket_directory import TicketDirectory
from services.ticket_validation.services.verification_meta import build_meta

logger = logging.getLogger(__name__)

# Errores transitorios del storage (pool agotado, conexión caída, lock timeout)
STORAGE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


class RecordNotPending(Exception):
    """El registro de verificación dejó de estar PENDING antes de redimir"""


@dataclass
class ScanResult:
    ticket_id: str
    verification_id: str
    event_id: str
    ticket_number: int
    expires_in_seconds: int
    advisories: List[str] = field(default_factory=list)


@dataclass
class VerifyResult:
    ticket_id: str
    verification_id: str
    used_at: Optional[datetime]
    idempotent: bool = False


@asynccontextmanager
async def storage_guard(operation: str):
    """Traducir errores del driver a StorageUnavailable"""
    try:
        yield
    except GateError:
        raise
    except STORAGE_ERRORS as e:
        logger.error(f"Storage no disponible durante {operation}: {type(e).__name__}: {e}")
        raise StorageUnavailable() from e


class GateVerificationService:
    """Orquestador de scan/verify con redención at-most-once"""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        oracle: Optional[AssetOracle] = None,
        guard: Optional[AntiFraudGuard] = None,
        scan_expires_seconds: Optional[int] = None,
        qr_max_age_seconds: Optional[int] = None,
        max_storage_retries: Optional[int] = None
    ):
        self.session_maker = session_maker
        self.oracle = oracle
        self.guard = guard or AntiFraudGuard()
        self.scan_expires_seconds = (
            settings.GATE_SCAN_EXPIRES_SECONDS if scan_expires_seconds is None else scan_expires_seconds
        )
        self.qr_max_age_seconds = (
            settings.QR_MAX_AGE_SECONDS if qr_max_age_seconds is None else qr_max_age_seconds
        )
        self.max_storage_retries = (
            settings.STORAGE_MAX_RETRIES if max_storage_retries is None else max_storage_retries
        )

    # ============ SCAN ============

    async def scan(
        self,
        qr_string: str,
        agent_id: str,
        gate_id: Optional[str] = None,
        require_fresh: bool = False
    ) -> ScanResult:
        """
        Fase de scan: valida el QR y deja un registro PENDING.

        Los fallos hard después de resolver el ticket quedan auditados como
        registro REJECTED con el código del error.
        """
        payload = payload_codec.decode(qr_string)
        payload_codec.validate_freshness(payload, self.qr_max_age_seconds)
        if require_fresh and not self.guard.check_freshness(payload.issued_at):
            raise Expired("QR no es reciente; genera uno nuevo en la app")
        raw_payload = json.dumps(payload.to_wire(), separators=(",", ":"))

        async with storage_guard("scan"):
            async with self.session_maker() as db:
                ticket = await TicketDirectory.find_by_payload(
                    db,
                    payload.event_id,
                    payload.ticket_number,
                    payload.asset_prefix
                )

                base_meta = build_meta(
                    event_id=ticket.event_id,
                    ticket_number=payload.ticket_number,
                    raw_payload=raw_payload,
                    staff_id=agent_id,
                    gate_id=gate_id,
                    scanned_at=isoformat(utcnow()),
                )

                try:
                    if not ticket.asset_id:
                        raise AssetNotFound("El mint del ticket aún no está confirmado")
                    payload_codec.verify_checksum(payload, ticket.asset_id)
                    self._ensure_active(ticket)
                    advisories = await self.guard.evaluate(db, agent_id, ticket.asset_id)
                except GateError as e:
                    logger.warning(f"Scan rechazado para ticket {ticket.ticket_id}: {e.code} ({e.detail})")
                    await self._record_rejection(db, ticket, agent_id, gate_id, e, base_meta)
                    await db.commit()
                    raise

                record = GateVerification(
                    event_id=ticket.event_id,
                    ticket_id=ticket.ticket_id,
                    verifying_agent=agent_id,
                    status=VerificationStatus.PENDING.value,
                    location=gate_id,
                    meta=build_meta(
                        base_meta,
                        expires_in_seconds=self.scan_expires_seconds,
                        advisory=",".join(advisories) if advisories else None,
                    ),
                    created_at=utcnow(),
                )
                db.add(record)
                await db.commit()

        logger.info(
            f"Scan OK ticket {ticket.ticket_id} (#{payload.ticket_number}) por {agent_id} "
            f"en gate {gate_id or '-'} -> verificación {record.verification_id}"
        )
        return ScanResult(
            ticket_id=ticket.ticket_id,
            verification_id=record.verification_id,
            event_id=ticket.event_id,
            ticket_number=payload.ticket_number,
            expires_in_seconds=self.scan_expires_seconds,
            advisories=advisories,
        )

    # ============ VERIFY ============

    async def verify(
        self,
        agent_id: str,
        verification_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        gate_id: Optional[str] = None
    ) -> VerifyResult:
        """
        Fase de verify: única autoridad de la redención at-most-once.

        Orden de validación (el primer fallo corta):
        ticket -> verificación del mismo ticket -> ledger -> mark_used -> registro VERIFIED
        """
        if not verification_id and not ticket_id:
            raise MalformedPayload("Se requiere verification_id o ticket_id")

        # 1-2. Lecturas en una sesión corta; se cierra antes de llamar al ledger
        async with storage_guard("verify"):
            async with self.session_maker() as db:
                record = None
                if ticket_id:
                    ticket = await TicketDirectory.find_by_id(db, ticket_id)
                    if verification_id:
                        record = await self._get_record(db, verification_id)
                else:
                    record = await self._get_record(db, verification_id)
                    ticket = await TicketDirectory.find_by_id(db, record.ticket_id)

                if record is not None and record.ticket_id != ticket.ticket_id:
                    error = VerificationTicketMismatch()
                    await self._record_rejection(
                        db, ticket, agent_id, gate_id, error,
                        build_meta(reason_detail=f"verification_id {record.verification_id} pertenece a otro ticket")
                    )
                    await db.commit()
                    raise error

                if record is not None and record.status == VerificationStatus.VERIFIED.value:
                    logger.info(f"Verify idempotente: {record.verification_id} ya estaba VERIFIED")
                    return VerifyResult(
                        ticket_id=ticket.ticket_id,
                        verification_id=record.verification_id,
                        used_at=ensure_utc(ticket.used_at),
                        idempotent=True,
                    )

                if record is not None and record.status == VerificationStatus.REJECTED.value:
                    # Un registro rechazado no se reabre: hay que volver a escanear
                    error = self._rejected_error(record, ticket.status, ticket.used_at)
                    logger.warning(
                        f"Verify sobre registro rechazado {record.verification_id} "
                        f"del ticket {ticket.ticket_id}: {error.code}"
                    )
                    raise error

                if record is not None and self._scan_expired(record):
                    error = Expired("La sesión de escaneo expiró; vuelve a escanear el QR")
                    await self._record_rejection(db, ticket, agent_id, gate_id, error, verification_id=record.verification_id)
                    await db.commit()
                    raise error

                ticket_ref = ticket.ticket_id
                event_ref = ticket.event_id
                ticket_number = ticket.ticket_number
                asset_id = ticket.asset_id
                holder_identity = ticket.holder_identity

                # Lectura rápida; el UPDATE condicional sigue siendo la autoridad
                lost_race = ticket.status != TicketStatus.ACTIVE.value and record is not None
                if ticket.status != TicketStatus.ACTIVE.value and record is None:
                    error = self._inactive_error(ticket.status, ticket.used_at)
                    await self._record_rejection(db, ticket, agent_id, gate_id, error)
                    await db.commit()
                    raise error

        if lost_race:
            # El registro se leyó PENDING pero el ticket ya no está ACTIVE:
            # otro verify con el mismo verification_id pudo haber ganado
            return await self._handle_lost_race(ticket_ref, event_ref, agent_id, gate_id, verification_id)

        # 3. Ledger (best effort, sin transacción abierta)
        try:
            oracle_meta = await self._cross_check_ledger(
                asset_id, holder_identity, ticket_ref, event_ref, ticket_number
            )
        except GateError as e:
            await self._reject_in_new_session(ticket_ref, event_ref, agent_id, gate_id, e, verification_id)
            raise

        # 4-5. Transacción corta: UPDATE condicional + registro VERIFIED
        try:
            result = await retry_with_backoff(
                lambda: self._redeem(ticket_ref, agent_id, gate_id, verification_id, oracle_meta),
                max_retries=self.max_storage_retries,
                exceptions=(StorageBusy,)
            )
        except (AlreadyRedeemed, RecordNotPending):
            return await self._handle_lost_race(ticket_ref, event_ref, agent_id, gate_id, verification_id)

        logger.info(
            f"Ticket {result.ticket_id} redimido por {agent_id} en gate {gate_id or '-'} "
            f"(verificación {result.verification_id}, ledger={oracle_meta.get('oracle_status')})"
        )
        return result

    async def _redeem(
        self,
        ticket_id: str,
        agent_id: str,
        gate_id: Optional[str],
        verification_id: Optional[str],
        oracle_meta: Dict[str, str]
    ) -> VerifyResult:
        """Un intento de la transacción atómica de redención"""
        commit_started = False
        try:
            async with self.session_maker() as db:
                used_at = await TicketDirectory.mark_used(db, ticket_id)

                stmt = select(Ticket.event_id).where(Ticket.ticket_id == ticket_id)
                event_id = (await db.execute(stmt)).scalar_one()

                meta_values = dict(
                    oracle_meta,
                    staff_id=agent_id,
                    gate_id=gate_id,
                    server_verified_at=isoformat(used_at),
                )

                record = None
                if verification_id:
                    record = await db.get(GateVerification, verification_id)
                if record is not None:
                    # Solo un registro PENDING pasa a VERIFIED; si no, se revierte mark_used
                    stmt = (
                        update(GateVerification)
                        .where(
                            GateVerification.verification_id == record.verification_id,
                            GateVerification.status == VerificationStatus.PENDING.value
                        )
                        .values(
                            status=VerificationStatus.VERIFIED.value,
                            verified_at=used_at,
                            verifying_agent=agent_id,
                            location=gate_id or record.location,
                            reason=None,
                            meta=build_meta(record.meta, **meta_values),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if (await db.execute(stmt)).rowcount != 1:
                        raise RecordNotPending(record.verification_id)
                else:
                    record = GateVerification(
                        event_id=event_id,
                        ticket_id=ticket_id,
                        verifying_agent=agent_id,
                        status=VerificationStatus.VERIFIED.value,
                        verified_at=used_at,
                        location=gate_id,
                        meta=build_meta(event_id=event_id, **meta_values),
                        created_at=used_at,
                    )
                    db.add(record)

                await db.flush()
                commit_started = True
                await db.commit()

                return VerifyResult(
                    ticket_id=ticket_id,
                    verification_id=record.verification_id,
                    used_at=used_at,
                )
        except STORAGE_ERRORS as e:
            if commit_started:
                # El commit pudo haberse aplicado: no reintentar a ciegas
                logger.error(f"Resultado ambiguo redimiendo ticket {ticket_id}: {type(e).__name__}: {e}")
                raise StorageUnavailable() from e
            raise StorageBusy() from e

    async def _handle_lost_race(
        self,
        ticket_id: str,
        event_id: str,
        agent_id: str,
        gate_id: Optional[str],
        verification_id: Optional[str]
    ) -> VerifyResult:
        """
        La redención no se aplicó: otro scanner ganó, el ticket cambió de estado
        o el registro dejó de estar PENDING. Se re-lee todo en una sesión nueva.
        """
        async with storage_guard("verify"):
            async with self.session_maker() as db:
                status, used_at = await TicketDirectory.get_redemption_state(db, ticket_id)

                if verification_id:
                    record = await db.get(GateVerification, verification_id)
                    if record is not None and record.status == VerificationStatus.VERIFIED.value:
                        # Carrera con el mismo verification_id: el ganador ya lo dejó VERIFIED
                        return VerifyResult(
                            ticket_id=ticket_id,
                            verification_id=verification_id,
                            used_at=used_at,
                            idempotent=True,
                        )
                    if record is not None and record.status == VerificationStatus.REJECTED.value:
                        error = self._rejected_error(record, status, used_at)
                        logger.warning(f"Verify rechazado para ticket {ticket_id}: registro {verification_id} ya rechazado ({error.code})")
                        raise error

                error = self._inactive_error(status, used_at)
                logger.warning(f"Verify rechazado para ticket {ticket_id} por {agent_id}: {error.code}")
                ticket = await TicketDirectory.find_by_id(db, ticket_id)
                await self._record_rejection(db, ticket, agent_id, gate_id, error, verification_id=verification_id)
                await db.commit()
        raise error

    async def _cross_check_ledger(
        self,
        asset_id: Optional[str],
        holder_identity: str,
        ticket_id: str,
        event_id: Optional[str] = None,
        ticket_number: Optional[int] = None
    ) -> Dict[str, str]:
        """
        Chequeo on-chain del asset.

        OracleUnavailable no aborta: se anota y se sigue solo con la base de
        datos. AssetNotFound, NotSoulbound y AssetAttributeMismatch sí abortan.
        Los atributos event_id/ticket_number del asset deben coincidir con el
        ticket; si faltan se anota en `missing_attributes`.
        """
        if not asset_id:
            return {"oracle_status": "skipped_no_asset"}
        if self.oracle is None:
            return {"oracle_status": "disabled"}

        try:
            snapshot = await self.oracle.fetch_asset(asset_id)
        except OracleUnavailable as e:
            logger.warning(f"Ledger no disponible para ticket {ticket_id}, verificando solo con DB: {e.detail}")
            return {"oracle_status": "unavailable", "reason_detail": e.detail}

        if not is_soulbound(snapshot):
            raise NotSoulbound()

        meta = {"oracle_status": "ok"}

        expected = {
            "event_id": event_id,
            "ticket_number": str(ticket_number) if ticket_number is not None else None,
        }
        missing = []
        for key, value in expected.items():
            on_chain = get_attribute(snapshot, key)
            if on_chain is None:
                missing.append(key)
            elif value is not None and on_chain != value:
                raise AssetAttributeMismatch(f"El asset declara {key}={on_chain}; el ticket tiene {value}")
        if missing:
            logger.warning(f"Asset del ticket {ticket_id} sin atributos on-chain: {', '.join(missing)}")
            meta["missing_attributes"] = ",".join(missing)

        if snapshot.owner:
            meta["asset_owner"] = snapshot.owner
            if snapshot.owner != holder_identity:
                logger.warning(
                    f"Owner on-chain del ticket {ticket_id} ({snapshot.owner[:8]}...) "
                    f"no coincide con el titular registrado"
                )
        if is_claimed(snapshot):
            # El atributo on-chain es solo un espejo; la DB decide
            logger.warning(f"Ticket {ticket_id} figura como claimed on-chain pero ACTIVE en DB")
            meta["claimed"] = "true"
            meta["claimed_at"] = get_attribute(snapshot, "claimed_at")
        return {k: v for k, v in meta.items() if v is not None}

    # ============ CONSULTAS ============

    async def get_ticket_status(self, ticket_id: str) -> dict:
        """Estado del ticket y sus registros, para re-consultar tras una desconexión"""
        async with storage_guard("get_ticket_status"):
            async with self.session_maker() as db:
                ticket = await TicketDirectory.find_by_id(db, ticket_id)
                stmt = (
                    select(GateVerification)
                    .where(GateVerification.ticket_id == ticket_id)
                    .order_by(GateVerification.created_at.asc())
                )
                records = (await db.execute(stmt)).scalars().all()

        return {
            "ticket_id": ticket.ticket_id,
            "event_id": ticket.event_id,
            "ticket_number": ticket.ticket_number,
            "holder_identity": ticket.holder_identity,
            "asset_id": ticket.asset_id,
            "status": ticket.status,
            "purchased_at": isoformat(ticket.purchased_at),
            "used_at": isoformat(ticket.used_at),
            "verifications": [
                {
                    "verification_id": r.verification_id,
                    "status": r.status,
                    "verifying_agent": r.verifying_agent,
                    "location": r.location,
                    "reason": r.reason,
                    "created_at": isoformat(r.created_at),
                    "verified_at": isoformat(r.verified_at),
                }
                for r in records
            ],
        }

    # ============ HELPERS ============

    @staticmethod
    async def _get_record(db: AsyncSession, verification_id: str) -> GateVerification:
        record = await db.get(GateVerification, verification_id)
        if record is None:
            raise VerificationNotFound()
        return record

    @staticmethod
    def _ensure_active(ticket: Ticket):
        if ticket.status != TicketStatus.ACTIVE.value:
            raise GateVerificationService._inactive_error(ticket.status, ticket.used_at)

    @staticmethod
    def _inactive_error(status: str, used_at: Optional[datetime]) -> GateError:
        if status == TicketStatus.USED.value:
            return AlreadyRedeemed(used_at)
        return TicketNotActive(status)

    @staticmethod
    def _rejected_error(record: GateVerification, status: str, used_at: Optional[datetime]) -> GateError:
        """Error con el que se rechazó el registro"""
        if record.reason in (AlreadyRedeemed.code, TicketNotActive.code) and status != TicketStatus.ACTIVE.value:
            return GateVerificationService._inactive_error(status, used_at)
        return error_from_code(record.reason, (record.meta or {}).get("reason_detail"))

    def _scan_expired(self, record: GateVerification) -> bool:
        if record.status != VerificationStatus.PENDING.value:
            return False
        try:
            expires_in = int((record.meta or {}).get("expires_in_seconds", self.scan_expires_seconds))
        except (TypeError, ValueError):
            expires_in = self.scan_expires_seconds
        created_at = ensure_utc(record.created_at)
        return utcnow() > created_at + timedelta(seconds=expires_in)

    async def _record_rejection(
        self,
        db: AsyncSession,
        ticket: Ticket,
        agent_id: str,
        gate_id: Optional[str],
        error: GateError,
        meta: Optional[Dict[str, str]] = None,
        verification_id: Optional[str] = None
    ):
        """
        Auditar un intento rechazado.

        Si el intento viene con verification_id se marca ese registro como
        REJECTED (nunca si ya está VERIFIED); si no, se crea uno nuevo.
        El llamador hace commit.
        """
        if verification_id:
            record = await db.get(GateVerification, verification_id)
            if record is not None:
                stmt = (
                    update(GateVerification)
                    .where(
                        GateVerification.verification_id == verification_id,
                        GateVerification.status != VerificationStatus.VERIFIED.value
                    )
                    .values(
                        status=VerificationStatus.REJECTED.value,
                        reason=error.code,
                        meta=build_meta(record.meta, reason_detail=error.detail, staff_id=agent_id, gate_id=gate_id),
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.execute(stmt)
                return

        db.add(GateVerification(
            event_id=ticket.event_id,
            ticket_id=ticket.ticket_id,
            verifying_agent=agent_id,
            status=VerificationStatus.REJECTED.value,
            location=gate_id,
            reason=error.code,
            meta=build_meta(
                meta or {},
                event_id=ticket.event_id,
                staff_id=agent_id,
                gate_id=gate_id,
                reason_detail=error.detail,
            ),
            created_at=utcnow(),
        ))

    async def _reject_in_new_session(
        self,
        ticket_id: str,
        event_id: str,
        agent_id: str,
        gate_id: Optional[str],
        error: GateError,
        verification_id: Optional[str]
    ):
        """Auditar un rechazo ocurrido fuera de una sesión (fallo del ledger)"""
        logger.warning(f"Verify rechazado para ticket {ticket_id}: {error.code} ({error.detail})")
        try:
            async with self.session_maker() as db:
                ticket = await TicketDirectory.find_by_id(db, ticket_id)
                await self._record_rejection(db, ticket, agent_id, gate_id, error, verification_id=verification_id)
                await db.commit()
        except STORAGE_ERRORS as e:
            logger.error(f"No se pudo auditar el rechazo del ticket {ticket_id} (evento {event_id}): {e}")
