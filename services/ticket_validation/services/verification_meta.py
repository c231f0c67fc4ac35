"""Metadata de los registros de verificación: map<str, str> con claves conocidas"""
from typing import Dict, Optional

RECOGNIZED_META_KEYS = frozenset({
    "event_id",
    "ticket_number",
    "claimed",             # Espejo del atributo on-chain, solo informativo
    "claimed_at",
    "qr_data",
    "staff_id",
    "gate_id",
    "raw_payload",         # QR decodificado, JSON compacto
    "reason_detail",
    "oracle_status",       # ok | unavailable | skipped_no_asset | disabled
    "advisory",            # Códigos anti-fraude separados por coma
    "scanned_at",
    "server_verified_at",
    "expires_in_seconds",
    "asset_owner",
    "missing_attributes",  # Atributos event_id/ticket_number ausentes en el asset
})


def build_meta(base: Optional[Dict[str, str]] = None, **values) -> Dict[str, str]:
    """
    Combinar metadata existente con nuevos valores.

    Los valores None se omiten y el resto se guarda como string; una clave no
    reconocida es un error de programación.
    """
    unknown = set(values) - RECOGNIZED_META_KEYS
    if unknown:
        raise KeyError(f"Claves de metadata no reconocidas: {', '.join(sorted(unknown))}")

    meta = dict(base or {})
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        meta[key] = str(value)
    return meta
