"""
Codec del QR de tickets.

Formato (compatible con los QR ya emitidos):

    "parchi:" + base64url_sin_padding(utf8(json({v, e, t, a, ts, c})))

- v: versión del protocolo (1)
- e: event_id
- t: número de ticket dentro del evento
- a: primeros 8 caracteres del asset_id
- ts: timestamp unix de emisión
- c: checksum de 4 hex = sha256("e:t:asset_id_completo:ts")[:4]

El checksum usa el asset_id completo, que solo conoce el servidor; por eso
decode() valida estructura y verify_checksum() se llama después de resolver
el ticket en la base de datos.
"""
import base64
import binascii
import hashlib
import hmac
import io
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import qrcode

from services.ticket_validation.errors import (
    AssetPrefixMismatch,
    Expired,
    MalformedPayload,
    TamperDetected,
    UnsupportedVersion,
)
from shared.utils.timeutils import unix_now

logger = logging.getLogger(__name__)

QR_SCHEME = "parchi:"
QR_VERSION = 1
ASSET_PREFIX_LENGTH = 8
CHECKSUM_LENGTH = 4
DEFAULT_MAX_AGE_SECONDS = 365 * 24 * 60 * 60  # 1 año: válido hasta que termine el evento

_BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_CHECKSUM_RE = re.compile(r"^[0-9a-f]{4}$")
_REQUIRED_FIELDS = ("v", "e", "t", "a", "ts", "c")


@dataclass(frozen=True)
class QRPayload:
    version: int
    event_id: str
    ticket_number: int
    asset_prefix: str
    issued_at: int
    checksum: str

    def to_wire(self) -> dict:
        """Dict con las claves cortas del QR, en el orden del formato"""
        return {
            "v": self.version,
            "e": self.event_id,
            "t": self.ticket_number,
            "a": self.asset_prefix,
            "ts": self.issued_at,
            "c": self.checksum,
        }


def _is_positive_int(value) -> bool:
    # bool es subclase de int; un "t": true no es un número de ticket
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def calculate_checksum(event_id: str, ticket_number: int, full_asset_id: str, issued_at: int) -> str:
    """Checksum truncado a 4 hex (16 bits) para mantener el QR compacto"""
    checksum_data = f"{event_id}:{ticket_number}:{full_asset_id}:{issued_at}"
    return hashlib.sha256(checksum_data.encode("utf-8")).hexdigest()[:CHECKSUM_LENGTH]


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(body: str) -> bytes:
    if not body or not _BASE64URL_RE.match(body):
        raise MalformedPayload("QR con caracteres fuera de base64url")
    padded = body + "=" * (-len(body) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        raise MalformedPayload("QR con base64 inválido")
    # Rechazar codificaciones no canónicas (bits sobrantes en el último carácter)
    if _b64url_encode(raw) != body:
        raise MalformedPayload("QR con base64 no canónico")
    return raw


def encode(event_id: str, ticket_number: int, full_asset_id: str, issued_at: Optional[int] = None) -> str:
    """
    Generar el string del QR para un ticket ya minteado.

    Determinístico para los mismos parámetros; si no se pasa issued_at se usa
    el timestamp actual.
    """
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("event_id es requerido")
    if not _is_positive_int(ticket_number):
        raise MalformedPayload("ticket_number debe ser un entero positivo")
    if not isinstance(full_asset_id, str) or len(full_asset_id) < ASSET_PREFIX_LENGTH:
        raise MalformedPayload(f"asset_id debe tener al menos {ASSET_PREFIX_LENGTH} caracteres")
    if issued_at is None:
        issued_at = unix_now()
    if not _is_positive_int(issued_at):
        raise MalformedPayload("issued_at debe ser un entero positivo")

    payload = QRPayload(
        version=QR_VERSION,
        event_id=event_id,
        ticket_number=ticket_number,
        asset_prefix=full_asset_id[:ASSET_PREFIX_LENGTH],
        issued_at=issued_at,
        checksum=calculate_checksum(event_id, ticket_number, full_asset_id, issued_at),
    )

    # JSON compacto, sin espacios
    serialized = json.dumps(payload.to_wire(), separators=(",", ":"), ensure_ascii=False)
    return f"{QR_SCHEME}{_b64url_encode(serialized.encode('utf-8'))}"


def decode(qr_string: str) -> QRPayload:
    """
    Decodificar y validar estructura del QR.

    No valida checksum: para eso se necesita el asset_id completo.
    """
    if not isinstance(qr_string, str) or not qr_string.startswith(QR_SCHEME):
        raise MalformedPayload(f'Formato de QR inválido: debe empezar con "{QR_SCHEME}"')

    raw = _b64url_decode(qr_string[len(QR_SCHEME):])

    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedPayload("QR con JSON inválido")

    if not isinstance(decoded, dict):
        raise MalformedPayload("QR con estructura inválida")

    missing = [field for field in _REQUIRED_FIELDS if field not in decoded]
    if missing:
        raise MalformedPayload(f"QR incompleto, faltan campos: {', '.join(missing)}")

    version = decoded["v"]
    if not _is_positive_int(version) or version != QR_VERSION:
        raise UnsupportedVersion(f"Versión de QR no soportada: {version}")

    event_id = decoded["e"]
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("event_id inválido")

    if not _is_positive_int(decoded["t"]):
        raise MalformedPayload("Número de ticket inválido")

    if not _is_positive_int(decoded["ts"]):
        raise MalformedPayload("Timestamp inválido")

    asset_prefix = decoded["a"]
    if not isinstance(asset_prefix, str) or len(asset_prefix) != ASSET_PREFIX_LENGTH:
        raise MalformedPayload("Prefijo de asset inválido")

    checksum = decoded["c"]
    if not isinstance(checksum, str) or not _CHECKSUM_RE.match(checksum):
        raise MalformedPayload("Checksum con formato inválido")

    return QRPayload(
        version=version,
        event_id=event_id,
        ticket_number=decoded["t"],
        asset_prefix=asset_prefix,
        issued_at=decoded["ts"],
        checksum=checksum,
    )


def validate_freshness(
    payload: QRPayload,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[int] = None
) -> None:
    """Expiración general del QR (ventana larga, no es el chequeo anti-screenshot)"""
    now = unix_now() if now is None else now
    age = now - payload.issued_at
    if age > max_age_seconds:
        raise Expired(f"QR expirado hace {age - max_age_seconds}s")


def verify_checksum(payload: QRPayload, full_asset_id: str) -> None:
    """Verificar integridad del QR contra el asset_id completo del ticket"""
    expected = calculate_checksum(
        payload.event_id,
        payload.ticket_number,
        full_asset_id,
        payload.issued_at
    )
    if not hmac.compare_digest(payload.checksum, expected):
        raise TamperDetected()

    if not full_asset_id.startswith(payload.asset_prefix):
        raise AssetPrefixMismatch()


def render_qr_png(qr_string: str, box_size: int = 10, border: int = 4) -> bytes:
    """Renderizar el QR como PNG"""
    if not qr_string:
        raise MalformedPayload("qr_string vacío, no se puede generar QR")

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(qr_string)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    img_buffer = io.BytesIO()
    img.save(img_buffer, format="PNG")
    img_bytes = img_buffer.getvalue()
    logger.debug(f"QR renderizado ({len(img_bytes)} bytes)")
    return img_bytes
