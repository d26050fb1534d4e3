"""
Data Models for the Check-in Scanner

This module contains the data classes that represent the core entities of
the check-in system: participants with their permissions and presence
state, access log entries, events, users and the results produced by the
scan pipeline. Documents are serialized with the field names used by the
stored records (``nombre``, ``permisos``, ``estado``, ``eventId``...).
"""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, List, Optional
import time
import uuid


def now_millis() -> int:
    """Current wall-clock time as integer milliseconds since the epoch"""
    return int(time.time() * 1000)


class AccessMode(Enum):
    """Enumeration of the zones an operator can scan for"""
    REGISTRO = "registro"
    AULA_MAGNA = "aula_magna"
    MASTER_CLASS = "master_class"
    CENA = "cena"

    @property
    def is_location(self) -> bool:
        """True for modes tracked as inside/outside (everything but registro)"""
        return self is not AccessMode.REGISTRO

    @property
    def state_flag(self) -> str:
        """Name of the ``estado`` flag this mode drives"""
        if self is AccessMode.REGISTRO:
            return "registrado"
        return f"en_{self.value}"

    @property
    def state_field(self) -> str:
        """Dotted document path of the ``estado`` flag"""
        return f"estado.{self.state_flag}"


LOCATION_MODES = [mode for mode in AccessMode if mode.is_location]


class Direction(Enum):
    """Direction of a scan; meaningless for registro"""
    ENTRADA = "entrada"
    SALIDA = "salida"


class EventStatus(Enum):
    """Lifecycle status of an event"""
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class UserRole(Enum):
    """Roles of the multi-tenant hierarchy, highest first"""
    SUPER_ADMIN = "super_admin"
    ADMIN_RESPONSABLE = "admin_responsable"
    ADMIN = "admin"
    CONTROLADOR = "controlador"


ADMIN_ROLES = (UserRole.SUPER_ADMIN, UserRole.ADMIN_RESPONSABLE, UserRole.ADMIN)


@dataclass
class Permissions:
    """Access grants per location mode; registro is never gated"""
    aula_magna: bool = True
    master_class: bool = False
    cena: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'Permissions':
        data = data or {}
        return cls(
            aula_magna=bool(data.get('aula_magna', False)),
            master_class=bool(data.get('master_class', False)),
            cena=bool(data.get('cena', False)),
        )

    def allows(self, mode: AccessMode) -> bool:
        """
        Check whether this grant set covers a mode

        Args:
            mode: Access mode being requested

        Returns:
            True if the mode is registro or the matching grant is set
        """
        if not mode.is_location:
            return True
        return bool(getattr(self, mode.value))

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ParticipantState:
    """Current registration and presence flags of a participant"""
    registrado: bool = False
    en_aula_magna: bool = False
    en_master_class: bool = False
    en_cena: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'ParticipantState':
        data = data or {}
        return cls(
            registrado=bool(data.get('registrado', False)),
            en_aula_magna=bool(data.get('en_aula_magna', False)),
            en_master_class=bool(data.get('en_master_class', False)),
            en_cena=bool(data.get('en_cena', False)),
        )

    def flag(self, mode: AccessMode) -> bool:
        """Value of the flag driven by ``mode``"""
        return bool(getattr(self, mode.state_flag))

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Participant:
    """
    Data model for an event participant

    Represents one attendee inside one event partition: identity fields,
    informational contact data, access grants and current presence state.
    The same ``dni`` may exist independently under different events.
    """
    dni: str
    nombre: str
    event_id: str
    permisos: Permissions = field(default_factory=Permissions)
    estado: ParticipantState = field(default_factory=ParticipantState)
    email: Optional[str] = None
    telefono: Optional[str] = None
    escuela: Optional[str] = None
    cargo: Optional[str] = None
    entitat: Optional[str] = None
    acceso: Optional[str] = None
    ha_pagado: bool = False
    timestamp_registro: Optional[int] = None
    ultima_actualizacion: Optional[int] = None
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict, event_id: Optional[str] = None) -> 'Participant':
        """
        Create Participant instance from a stored document

        Args:
            data: Dictionary containing the participant document
            event_id: Partition key to use when the document lacks ``eventId``

        Returns:
            Participant instance

        Raises:
            KeyError: If ``dni`` or ``nombre`` are missing
        """
        return cls(
            dni=str(data['dni']),
            nombre=str(data['nombre']),
            event_id=data.get('eventId') or event_id or '',
            permisos=Permissions.from_dict(data.get('permisos')),
            estado=ParticipantState.from_dict(data.get('estado')),
            email=data.get('email'),
            telefono=data.get('telefono'),
            escuela=data.get('escuela'),
            cargo=data.get('cargo'),
            entitat=data.get('entitat'),
            acceso=data.get('acceso'),
            ha_pagado=bool(data.get('haPagado', False)),
            timestamp_registro=data.get('timestamp_registro'),
            ultima_actualizacion=data.get('ultima_actualizacion'),
            version=int(data.get('version', 0)),
        )

    def to_dict(self) -> Dict:
        """
        Convert participant to a document for storage or JSON responses

        Returns:
            Dictionary representation using the stored field names
        """
        return {
            'dni': self.dni,
            'nombre': self.nombre,
            'eventId': self.event_id,
            'email': self.email,
            'telefono': self.telefono,
            'escuela': self.escuela,
            'cargo': self.cargo,
            'entitat': self.entitat,
            'acceso': self.acceso,
            'haPagado': self.ha_pagado,
            'permisos': self.permisos.to_dict(),
            'estado': self.estado.to_dict(),
            'timestamp_registro': self.timestamp_registro,
            'ultima_actualizacion': self.ultima_actualizacion,
            'version': self.version,
        }


@dataclass
class AccessLogEntry:
    """
    Data model for one scan attempt

    Entries are append-only: one per processed scan, successful or not.
    They form an audit trail and are never consulted when validating.
    """
    id: str
    dni: str
    nombre: str
    modo: AccessMode
    direccion: Direction
    exitoso: bool
    mensaje: str
    operador: str
    operador_uid: str
    timestamp: int
    event_id: str
    email: Optional[str] = None
    telefono: Optional[str] = None
    escuela: Optional[str] = None
    cargo: Optional[str] = None
    ha_pagado: Optional[bool] = None
    permisos: Optional[Permissions] = None

    @classmethod
    def create_new(cls, dni: str, nombre: str, modo: AccessMode, direccion: Direction,
                   exitoso: bool, mensaje: str, operador: str, operador_uid: str,
                   event_id: str, participant: Optional[Participant] = None) -> 'AccessLogEntry':
        """
        Create a new log entry stamped with the current time

        Args:
            dni: Identifier of the scanned participant, or "unknown"
            nombre: Display name of the participant
            modo: Access mode of the scan
            direccion: Direction of the scan
            exitoso: Whether access was granted
            mensaje: Human-readable outcome
            operador: Name of the scanning user
            operador_uid: UID of the scanning user
            event_id: Event partition
            participant: Optional participant snapshot

        Returns:
            New AccessLogEntry instance
        """
        entry = cls(
            id=uuid.uuid4().hex,
            dni=dni,
            nombre=nombre,
            modo=modo,
            direccion=direccion,
            exitoso=exitoso,
            mensaje=mensaje,
            operador=operador,
            operador_uid=operador_uid,
            timestamp=now_millis(),
            event_id=event_id,
        )
        if participant is not None:
            entry.email = participant.email
            entry.telefono = participant.telefono
            entry.escuela = participant.escuela
            entry.cargo = participant.cargo
            entry.ha_pagado = participant.ha_pagado
            entry.permisos = participant.permisos
        return entry

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccessLogEntry':
        permisos = data.get('permisos')
        return cls(
            id=data['id'],
            dni=data['dni'],
            nombre=data.get('nombre', ''),
            modo=AccessMode(data['modo']),
            direccion=Direction(data['direccion']),
            exitoso=bool(data['exitoso']),
            mensaje=data.get('mensaje', ''),
            operador=data.get('operador', ''),
            operador_uid=data.get('operadorUid', ''),
            timestamp=int(data['timestamp']),
            event_id=data.get('eventId', ''),
            email=data.get('email'),
            telefono=data.get('telefono'),
            escuela=data.get('escuela'),
            cargo=data.get('cargo'),
            ha_pagado=data.get('haPagado'),
            permisos=Permissions.from_dict(permisos) if permisos is not None else None,
        )

    def to_dict(self) -> Dict:
        """
        Convert log entry to dictionary

        Returns:
            Dictionary representation of the log entry
        """
        return {
            'id': self.id,
            'dni': self.dni,
            'nombre': self.nombre,
            'modo': self.modo.value,
            'direccion': self.direccion.value,
            'exitoso': self.exitoso,
            'mensaje': self.mensaje,
            'operador': self.operador,
            'operadorUid': self.operador_uid,
            'timestamp': self.timestamp,
            'eventId': self.event_id,
            'email': self.email,
            'telefono': self.telefono,
            'escuela': self.escuela,
            'cargo': self.cargo,
            'haPagado': self.ha_pagado,
            'permisos': self.permisos.to_dict() if self.permisos else None,
        }


@dataclass
class Event:
    """Scoping container for participants and access logs"""
    id: str
    organization_id: str
    name: str
    status: EventStatus = EventStatus.DRAFT
    access_modes: List[AccessMode] = field(default_factory=lambda: list(AccessMode))
    description: Optional[str] = None
    location: Optional[str] = None
    date: Optional[int] = None

    @classmethod
    def from_dict(cls, event_id: str, data: Dict) -> 'Event':
        settings = data.get('settings') or {}
        modes = settings.get('accessModes') or [mode.value for mode in AccessMode]
        return cls(
            id=event_id,
            organization_id=data['organizationId'],
            name=data['name'],
            status=EventStatus(data.get('status', EventStatus.DRAFT.value)),
            access_modes=[AccessMode(mode) for mode in modes],
            description=data.get('description'),
            location=data.get('location'),
            date=data.get('date'),
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'organizationId': self.organization_id,
            'name': self.name,
            'status': self.status.value,
            'settings': {'accessModes': [mode.value for mode in self.access_modes]},
            'description': self.description,
            'location': self.location,
            'date': self.date,
        }

    def is_mode_enabled(self, mode: AccessMode) -> bool:
        return mode in self.access_modes


@dataclass
class User:
    """
    Data model for an application user

    Users authenticate with email and password; ``organization_id`` is
    None only for the super admin.
    """
    uid: str
    email: str
    username: str
    role: UserRole
    password_hash: str
    organization_id: Optional[str] = None
    assigned_event_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, uid: str, data: Dict) -> 'User':
        return cls(
            uid=uid,
            email=data['email'],
            username=data.get('username', data['email']),
            role=UserRole(data['role']),
            password_hash=data['password_hash'],
            organization_id=data.get('organizationId'),
            assigned_event_ids=list(data.get('assignedEventIds', [])),
        )

    def to_dict(self) -> Dict:
        """
        Convert user to dictionary (excluding the password hash)

        Returns:
            Dictionary with the public user fields
        """
        return {
            'uid': self.uid,
            'email': self.email,
            'username': self.username,
            'role': self.role.value,
            'organizationId': self.organization_id,
            'assignedEventIds': list(self.assigned_event_ids),
        }


@dataclass(frozen=True)
class ActorContext:
    """
    Identity of whoever is acting, passed explicitly into every operation

    Replaces any process-wide notion of "current user".
    """
    uid: str
    role: UserRole
    organization_id: Optional[str] = None
    username: str = ''
    assigned_event_ids: tuple = ()

    @classmethod
    def from_user(cls, user: User) -> 'ActorContext':
        return cls(
            uid=user.uid,
            role=user.role,
            organization_id=user.organization_id,
            username=user.username,
            assigned_event_ids=tuple(user.assigned_event_ids),
        )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def display_name(self) -> str:
        return self.username or self.uid


@dataclass
class ScanKey:
    """Lookup key produced by the scan resolver"""
    dni: str
    name_hint: Optional[str] = None
    kind: str = "plain"


@dataclass
class ValidationResult:
    """Outcome of the access decision table"""
    allowed: bool
    reason: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class ScanResult:
    """
    Result surfaced to the operator after one scan

    ``suggested_dismissal`` is "auto" for approvals (the screen may close
    itself after ``dismiss_after`` seconds) and "manual" for denials.
    """
    allowed: bool
    message: str
    mode: AccessMode
    direction: Direction
    dni: Optional[str] = None
    participant: Optional[Participant] = None
    warnings: List[str] = field(default_factory=list)
    suggested_dismissal: str = "manual"
    dismiss_after: Optional[float] = None
    stages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'allowed': self.allowed,
            'message': self.message,
            'mode': self.mode.value,
            'direction': self.direction.value,
            'dni': self.dni,
            'participant': self.participant.to_dict() if self.participant else None,
            'warnings': list(self.warnings),
            'suggestedDismissal': self.suggested_dismissal,
            'dismissAfter': self.dismiss_after,
            'stages': list(self.stages),
        }
