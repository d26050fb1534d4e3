"""
Access Validator

Pure decision function for a scan: given the participant record, the
requested mode and direction, decide whether access is allowed and why.
Registration is a one-shot flag; each location mode is an independent
inside/outside automaton. No I/O happens here.
"""

import unicodedata
from typing import Optional

from .models import AccessMode, Direction, Participant, ValidationResult

PARTICIPANT_NOT_FOUND = "participant not found"
ALREADY_REGISTERED = "already registered"
REGISTRATION_GRANTED = "registration granted"
MUST_REGISTER_FIRST = "must register first"


def canonical_name(name: Optional[str]) -> str:
    """
    Canonical form of a person's name for the soft cross-check

    Accents are stripped (NFKD, combining marks dropped), the text is
    case-folded and runs of whitespace collapse to one space, so
    "José  Pérez" and "jose perez" compare equal.

    Args:
        name: Name as printed on the QR code or stored on the record

    Returns:
        Canonical comparison key
    """
    decomposed = unicodedata.normalize('NFKD', name or '')
    stripped = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return ' '.join(stripped.casefold().split())


def names_match(name_hint: Optional[str], nombre: str) -> bool:
    """True when there is no hint or the hint matches the stored name"""
    if not name_hint:
        return True
    return canonical_name(name_hint) == canonical_name(nombre)


def _deny(reason: str) -> ValidationResult:
    return ValidationResult(allowed=False, reason=reason)


def _decide(participant: Participant, mode: AccessMode, direction: Direction,
            require_registration: bool) -> ValidationResult:
    if mode is AccessMode.REGISTRO:
        if participant.estado.registrado:
            return _deny(ALREADY_REGISTERED)
        return ValidationResult(allowed=True, reason=REGISTRATION_GRANTED)

    name = mode.value
    if not participant.permisos.allows(mode):
        return _deny(f"no permission for {name}")

    if require_registration and not participant.estado.registrado:
        return _deny(MUST_REGISTER_FIRST)

    inside = participant.estado.flag(mode)
    if direction is Direction.ENTRADA:
        if inside:
            return _deny(f"already inside {name}")
        return ValidationResult(allowed=True, reason=f"entry granted to {name}")

    if not inside:
        return _deny(f"not currently inside {name}, cannot exit")
    return ValidationResult(allowed=True, reason=f"exit granted from {name}")


def validate(participant: Optional[Participant], mode: AccessMode, direction: Direction,
             name_hint: Optional[str] = None,
             require_registration: bool = False) -> ValidationResult:
    """
    Decide whether a scan grants access

    Args:
        participant: Current participant record, or None if the lookup found nothing
        mode: Requested access mode
        direction: Entry or exit; ignored for registro
        name_hint: Name read from the QR payload, if the format carries one
        require_registration: Deny location modes until the participant
            has registered

    Returns:
        ValidationResult; a name mismatch adds a warning to an allowed
        result and never turns it into a denial
    """
    if participant is None:
        return _deny(PARTICIPANT_NOT_FOUND)

    result = _decide(participant, mode, direction, require_registration)
    if result.allowed and not names_match(name_hint, participant.nombre):
        result.warnings.append(
            f"name on QR ({name_hint}) differs from record ({participant.nombre})"
        )
    return result
