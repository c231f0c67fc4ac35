"""
Taxonomía de errores del gate.

Cada error lleva un código máquina estable (lo que ve el scanner), un status
HTTP y un mensaje legible. Los errores "soft" no abortan la verificación; se
registran en la metadata del registro de verificación.
"""
from datetime import datetime
from typing import Optional

from fastapi import Request
from starlette.responses import JSONResponse

from shared.utils.timeutils import ensure_utc


class GateError(Exception):
    """Error base de la verificación de tickets"""

    code = "gate_error"
    http_status = 400
    message = "Error de verificación"
    soft = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.message
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "detail": self.detail}


class MalformedPayload(GateError):
    code = "malformed_payload"
    message = "QR inválido o ilegible"


class UnsupportedVersion(GateError):
    code = "unsupported_version"
    message = "Versión de QR no soportada"


class Expired(GateError):
    code = "expired"
    message = "QR expirado"


class TamperDetected(GateError):
    code = "tamper_detected"
    message = "QR adulterado: checksum inválido"


class AssetPrefixMismatch(GateError):
    code = "asset_prefix_mismatch"
    message = "El QR no corresponde al asset del ticket"


class TicketNotFound(GateError):
    code = "ticket_not_found"
    http_status = 404
    message = "Ticket no encontrado"


class VerificationNotFound(GateError):
    code = "verification_not_found"
    http_status = 404
    message = "Registro de verificación no encontrado"


class VerificationTicketMismatch(GateError):
    code = "verification_ticket_mismatch"
    message = "La verificación no corresponde a este ticket"


class AlreadyRedeemed(GateError):
    code = "already_redeemed"
    http_status = 409
    message = "Ticket ya utilizado"

    def __init__(self, used_at: Optional[datetime] = None, detail: Optional[str] = None):
        self.used_at = ensure_utc(used_at)
        if detail is None and self.used_at is not None:
            detail = f"Ticket ya utilizado: check-in registrado el {self.used_at.strftime('%Y-%m-%d %H:%M:%S')} UTC"
        super().__init__(detail)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["used_at"] = self.used_at.isoformat() if self.used_at else None
        return data


class TicketNotActive(GateError):
    code = "ticket_not_active"
    http_status = 409
    message = "Ticket en estado inválido"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Ticket en estado inválido: {status}")


class AssetNotFound(GateError):
    code = "asset_not_found"
    http_status = 422
    message = "Asset del ticket no encontrado en el ledger"


class NotSoulbound(GateError):
    code = "not_soulbound"
    http_status = 422
    message = "El asset del ticket no es intransferible"


class AssetAttributeMismatch(GateError):
    code = "asset_attribute_mismatch"
    http_status = 422
    message = "El asset on-chain pertenece a otro evento o ticket"


class OracleUnavailable(GateError):
    code = "oracle_unavailable"
    http_status = 503
    message = "Ledger no disponible"
    soft = True


class StorageUnavailable(GateError):
    code = "storage_unavailable"
    http_status = 503
    message = "Base de datos no disponible. Consulta el estado del ticket antes de reintentar"


class StorageBusy(StorageUnavailable):
    """Fallo antes del commit: la escritura no fue reconocida y es seguro reintentar"""
    message = "Base de datos ocupada. Reintenta en unos segundos"


class RateLimited(GateError):
    code = "rate_limited"
    http_status = 429
    message = "Demasiados escaneos de este operador. Espera antes de continuar"
    soft = True


class DuplicateScanWindow(GateError):
    code = "duplicate_scan_window"
    http_status = 429
    message = "Este ticket fue escaneado hace instantes"
    soft = True


_ERRORS_BY_CODE = {
    error_class.code: error_class
    for error_class in (
        MalformedPayload,
        UnsupportedVersion,
        Expired,
        TamperDetected,
        AssetPrefixMismatch,
        VerificationTicketMismatch,
        AssetNotFound,
        NotSoulbound,
        AssetAttributeMismatch,
        RateLimited,
        DuplicateScanWindow,
    )
}


def error_from_code(code: Optional[str], detail: Optional[str] = None) -> GateError:
    """Reconstruir el error guardado como `reason` de un registro REJECTED"""
    error_class = _ERRORS_BY_CODE.get(code, GateError)
    return error_class(detail)


async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    """Renderizar GateError como {"ok": false, "error": code, "detail": ...}"""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())
