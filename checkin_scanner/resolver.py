"""
Scan Resolver

Turns the raw text read from a QR code into a participant lookup key.
Four payload shapes are accepted::

    "<displayName>/<dni>/<email>"        name cross-check format
    "<eventId>/<dni>"                    event-scoped format
    {"dni": "12345678A", "nombre": "Juan"}   legacy JSON
    "<dni>" or "<dni>+<email>"           plain identifier

Format detection is a pure classification step: ``classify`` never raises
and returns a tagged ``ParsedScan``; ``resolve`` turns an error
classification into a ``ResolverError``.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from .exceptions import ResolverError
from .models import ScanKey

DNI_PATTERN = re.compile(r'^[0-9XYZ][0-9]{7}[A-Z]$', re.IGNORECASE)

SLASH = "slash"
JSON = "json"
PLAIN = "plain"
ERROR = "error"


@dataclass
class ParsedScan:
    """Tagged classification of a scanned payload"""
    kind: str
    dni: Optional[str] = None
    name_hint: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.kind == ERROR


def _error(error_kind: str, message: str, dni: Optional[str] = None) -> ParsedScan:
    return ParsedScan(kind=ERROR, dni=dni, error_kind=error_kind, error_message=message)


def is_valid_dni(token: str) -> bool:
    """Check a token against the DNI/NIE pattern (case-insensitive)"""
    return bool(DNI_PATTERN.match(token))


def normalize_dni(token: Optional[str]) -> str:
    """
    Canonical form of a participant key

    Keys are stripped; keys shaped like a DNI/NIE are upper-cased so that
    "12345678a" and "12345678A" name the same participant. Other keys are
    kept as they are.
    """
    token = (token or '').strip()
    return token.upper() if is_valid_dni(token) else token


def _classify_slash(text: str, event_id: Optional[str]) -> ParsedScan:
    segments = [segment.strip() for segment in text.split('/')]
    if len(segments) < 2 or not segments[0] or not segments[1]:
        return _error(
            ResolverError.MISSING_REQUIRED_FIELDS,
            f"QR payload '{text}' needs at least two non-empty '/' separated fields",
            dni=segments[1] if len(segments) > 1 and segments[1] else None,
        )
    first, dni = segments[0], segments[1]
    if event_id and first == event_id:
        return ParsedScan(kind=SLASH, dni=normalize_dni(dni))
    return ParsedScan(kind=SLASH, dni=normalize_dni(dni), name_hint=first)


def _classify_json(text: str) -> ParsedScan:
    try:
        payload = json.loads(text)
    except ValueError as e:
        return _error(
            ResolverError.MALFORMED_STRUCTURED_PAYLOAD,
            f"Malformed QR JSON payload ({e}); expected "
            '{"dni":"12345678A","nombre":"Full Name"}',
        )
    if not isinstance(payload, dict):
        return _error(
            ResolverError.MISSING_REQUIRED_FIELDS,
            "QR JSON payload must be an object with 'dni' and 'nombre'",
        )
    dni = payload.get('dni')
    nombre = payload.get('nombre')
    dni = dni.strip() if isinstance(dni, str) else None
    nombre = nombre.strip() if isinstance(nombre, str) else None
    if not dni or not nombre:
        missing = [name for name, value in (('dni', dni), ('nombre', nombre)) if not value]
        return _error(
            ResolverError.MISSING_REQUIRED_FIELDS,
            f"QR JSON payload is missing required fields: {', '.join(missing)}",
            dni=dni,
        )
    return ParsedScan(kind=JSON, dni=normalize_dni(dni), name_hint=nombre)


def _classify_plain(text: str) -> ParsedScan:
    token = text.split('+', 1)[0].strip()
    if not token:
        return _error(
            ResolverError.MISSING_REQUIRED_FIELDS,
            "QR payload does not contain an identifier",
        )
    if not is_valid_dni(token):
        return _error(
            ResolverError.INVALID_IDENTIFIER_FORMAT,
            f"Invalid identifier format: '{token}' (expected 8 digits and a letter, "
            "or X/Y/Z, 7 digits and a letter)",
            dni=token,
        )
    return ParsedScan(kind=PLAIN, dni=normalize_dni(token))


def classify(raw_text: Optional[str], event_id: Optional[str] = None) -> ParsedScan:
    """
    Classify a scanned payload without raising

    Args:
        raw_text: Text decoded from the QR code
        event_id: Id of the active event, used to recognise the
            ``<eventId>/<dni>`` format

    Returns:
        ParsedScan tagged ``slash``, ``json``, ``plain`` or ``error``
    """
    text = (raw_text or '').strip()
    if not text:
        return _error(ResolverError.MISSING_REQUIRED_FIELDS, "Empty QR payload")
    if text.startswith('{') or text.startswith('['):
        return _classify_json(text)
    if '/' in text:
        return _classify_slash(text, event_id)
    return _classify_plain(text)


def resolve(raw_text: Optional[str], event_id: Optional[str] = None) -> ScanKey:
    """
    Resolve a scanned payload into a lookup key

    Args:
        raw_text: Text decoded from the QR code
        event_id: Id of the active event

    Returns:
        ScanKey with the dni and an optional name hint

    Raises:
        ResolverError: If the payload is malformed, the identifier is
            invalid or required fields are missing
    """
    parsed = classify(raw_text, event_id)
    if parsed.is_error:
        raise ResolverError(parsed.error_kind, parsed.error_message, dni=parsed.dni)
    return ScanKey(dni=parsed.dni, name_hint=parsed.name_hint, kind=parsed.kind)


def build_event_qr_content(event_id: str, dni: str) -> str:
    """Content of the event-scoped QR code handed out with invitations"""
    return f"{event_id}/{dni}"


def build_qr_image_url(content: str, size: int = 200) -> str:
    """
    URL of a rendered QR image for ``content``

    Args:
        content: Text to encode
        size: Image side in pixels

    Returns:
        api.qrserver.com image URL
    """
    return (
        "https://api.qrserver.com/v1/create-qr-code/"
        f"?size={size}x{size}&data={quote(content, safe='')}&format=png"
    )
