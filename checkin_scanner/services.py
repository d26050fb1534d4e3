"""
Business Logic Services for the Check-in Scanner

This module contains the service classes behind the scan pipeline and the
admin screens:

- ``StateTransitionApplier`` persists the presence change of an allowed scan;
- ``AccessLogWriter`` appends the audit entry of every scan attempt;
- ``AuthenticationService``, ``EventService``, ``ParticipantService`` and
  ``StatisticsService`` back the admin and dashboard operations.

Every operation acting on behalf of a user takes an explicit
``ActorContext``.
"""

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from .exceptions import (
    AuthenticationFailedException,
    DataValidationException,
    ParticipantNotFoundException,
    PermissionDeniedException,
    StoreError,
)
from .models import (
    AccessLogEntry,
    AccessMode,
    ActorContext,
    Direction,
    Event,
    LOCATION_MODES,
    Participant,
    Permissions,
    User,
    UserRole,
    now_millis,
)
from .repositories import AccessLogStore, DataRepository, ParticipantStore
from .resolver import normalize_dni
from .roles import can_manage_role, require_event_access, require_permission

logger = logging.getLogger(__name__)

UNKNOWN_DNI = "unknown"
SYSTEM_OPERATOR = "sistema"


class StateTransitionApplier:
    """
    Persists the state change of an allowed scan

    Only the flag driven by the scan changes (plus bookkeeping
    timestamps). The write is a compare-and-set on that flag, using the
    value the validator saw as precondition, so two devices approving the
    same entry at once cannot both succeed.
    """

    def __init__(self, participant_store: ParticipantStore):
        self.participant_store = participant_store

    @staticmethod
    def transition(participant: Participant, mode: AccessMode,
                   direction: Direction) -> Tuple[str, bool, bool, Dict]:
        """
        Compute the write for a scan

        Args:
            participant: Snapshot the decision was made on
            mode: Access mode
            direction: Entry or exit

        Returns:
            Tuple of (field path, expected value, new value, extra fields)
        """
        now = now_millis()
        extra = {'ultima_actualizacion': now}
        if mode is AccessMode.REGISTRO:
            extra['timestamp_registro'] = now
            new = True
        else:
            new = direction is Direction.ENTRADA
        return mode.state_field, participant.estado.flag(mode), new, extra

    def apply(self, participant: Participant, mode: AccessMode, direction: Direction) -> None:
        """
        Write the new state of an allowed scan

        Args:
            participant: Snapshot the decision was made on
            mode: Access mode
            direction: Entry or exit

        Raises:
            StateConflictError: If the flag changed since the snapshot was read
            StoreError: If the write fails
        """
        field, expected, new, extra = self.transition(participant, mode, direction)
        self.participant_store.compare_and_set_field(
            participant.dni, participant.event_id, field, expected, new, extra
        )
        logger.info("Set %s=%s for %s in event %s", field, new, participant.dni, participant.event_id)


class AccessLogWriter:
    """
    Appends one immutable log entry per scan attempt

    Missing context never prevents the write. A failed append, whatever
    raised it, is logged and handed back as a warning string, so the caller can surface it
    without changing the scan outcome.
    """

    def __init__(self, log_store: AccessLogStore):
        self.log_store = log_store

    def write(self, dni: Optional[str], nombre: Optional[str], mode: AccessMode,
              direction: Direction, success: bool, message: str,
              actor: Optional[ActorContext] = None, event_id: str = '',
              participant: Optional[Participant] = None) -> Optional[str]:
        """
        Record a scan attempt

        Args:
            dni: Scanned identifier, best effort
            nombre: Participant name, if known
            mode: Access mode of the scan
            direction: Direction of the scan
            success: Whether access was granted
            message: Outcome shown to the operator
            actor: Scanning user, if known
            event_id: Event partition
            participant: Participant snapshot, if one was found

        Returns:
            None on success, or a warning describing the failed write
        """
        if not nombre and participant is not None:
            nombre = participant.nombre
        entry = AccessLogEntry.create_new(
            dni=dni or UNKNOWN_DNI,
            nombre=nombre or UNKNOWN_DNI,
            modo=mode,
            direccion=direction,
            exitoso=success,
            mensaje=message,
            operador=actor.display_name if actor else SYSTEM_OPERATOR,
            operador_uid=actor.uid if actor else '',
            event_id=event_id,
            participant=participant,
        )
        try:
            self.log_store.append(entry)
        except StoreError as e:
            logger.error("Could not write access log for %s in event %s: %s", entry.dni, event_id, e)
            return f"access log not recorded: {e.message}"
        except Exception as e:
            logger.exception("Unexpected failure writing access log for %s in event %s", entry.dni, event_id)
            return f"access log not recorded: {e}"
        return None


class AuthenticationService:
    """
    Handles user authentication

    Users are loaded from a repository holding ``{uid: user document}``.
    Passwords are stored as werkzeug hashes.
    """

    def __init__(self, user_repository: DataRepository):
        """
        Initialize authentication service

        Args:
            user_repository: Repository for user data
        """
        self.user_repository = user_repository
        self._users: Dict[str, User] = {}
        self._load_users()

    def _load_users(self) -> None:
        """
        Load users from repository

        Raises:
            DataValidationException: If a user document is invalid
        """
        self._users = {}
        for uid, data in self.user_repository.load_data().items():
            try:
                self._users[uid] = User.from_dict(uid, data)
            except (KeyError, ValueError) as e:
                raise DataValidationException(f"user_{uid}", f"Invalid user data: {e}")

    def _save_users(self) -> None:
        data = {}
        for uid, user in self._users.items():
            document = user.to_dict()
            document['password_hash'] = user.password_hash
            data[uid] = document
        self.user_repository.save_data(data)

    def authenticate(self, email: str, password: str) -> User:
        """
        Authenticate user credentials

        Args:
            email: Login email
            password: Plain-text password

        Returns:
            The authenticated User

        Raises:
            AuthenticationFailedException: If the credentials are invalid
        """
        if not email or not password:
            raise AuthenticationFailedException()

        email = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == email:
                if check_password_hash(user.password_hash, password):
                    return user
                break
        raise AuthenticationFailedException(email)

    def get_user(self, uid: str) -> Optional[User]:
        return self._users.get(uid)

    def actor_for(self, uid: str) -> ActorContext:
        """
        Build the actor context of a logged-in user

        Raises:
            AuthenticationFailedException: If the user no longer exists
        """
        user = self.get_user(uid)
        if user is None:
            raise AuthenticationFailedException(uid)
        return ActorContext.from_user(user)

    def create_user(self, actor: ActorContext, email: str, username: str, role: UserRole,
                    password: str, organization_id: Optional[str] = None,
                    assigned_event_ids: Optional[List[str]] = None) -> User:
        """
        Create a user below the actor in the role hierarchy

        Args:
            actor: Acting user
            email: Login email, unique
            username: Display name
            role: Role of the new user
            password: Initial password
            organization_id: Organization; forced to the actor's own
                unless the actor is super admin
            assigned_event_ids: Events a controller may scan

        Returns:
            The created User

        Raises:
            PermissionDeniedException: If the actor cannot create ``role``
            DataValidationException: If the email is taken or missing
        """
        require_permission(actor, 'can_create_users', 'create users')
        if not can_manage_role(actor.role, role):
            raise PermissionDeniedException(actor.role.value, f"create a '{role.value}' user")
        if not email or not password:
            raise DataValidationException("email", "email and password are required")
        if any(user.email.lower() == email.lower() for user in self._users.values()):
            raise DataValidationException("email", f"'{email}' is already registered")

        if actor.role is not UserRole.SUPER_ADMIN:
            organization_id = actor.organization_id
        user = User(
            uid=uuid.uuid4().hex,
            email=email,
            username=username or email,
            role=role,
            password_hash=generate_password_hash(password),
            organization_id=organization_id,
            assigned_event_ids=list(assigned_event_ids or []),
        )
        self._users[user.uid] = user
        self._save_users()
        logger.info("User %s created %s user %s", actor.uid, role.value, user.uid)
        return user


class EventService:
    """Loads events and answers scoping questions about them"""

    def __init__(self, event_repository: DataRepository):
        self.event_repository = event_repository
        self._events: Dict[str, Event] = {}
        self._load_events()

    def _load_events(self) -> None:
        self._events = {}
        for event_id, data in self.event_repository.load_data().items():
            try:
                self._events[event_id] = Event.from_dict(event_id, data)
            except (KeyError, ValueError) as e:
                raise DataValidationException(f"event_{event_id}", f"Invalid event data: {e}")

    def get_event(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    def is_mode_enabled(self, event_id: str, mode: AccessMode) -> bool:
        """
        Check if an event accepts scans for a mode

        Events unknown to this service accept every mode.
        """
        event = self.get_event(event_id)
        return event is None or event.is_mode_enabled(mode)

    def events_for(self, actor: ActorContext) -> List[Event]:
        """
        Events visible to an actor

        Returns:
            All events for super admins, assigned events for controllers,
            organization events otherwise
        """
        if actor.role is UserRole.SUPER_ADMIN:
            return list(self._events.values())
        if actor.role is UserRole.CONTROLADOR:
            return [e for e in self._events.values() if e.id in actor.assigned_event_ids]
        return [e for e in self._events.values() if e.organization_id == actor.organization_id]

    def save_event(self, actor: ActorContext, event: Event) -> Event:
        """
        Create or update an event

        Raises:
            PermissionDeniedException: If the actor may not manage events
                of that organization
        """
        permission = 'can_edit_event' if event.id in self._events else 'can_create_event'
        require_permission(actor, permission, "manage events")
        require_event_access(actor, event, event.id)
        self._events[event.id] = event
        self.event_repository.save_data({eid: e.to_dict() for eid, e in self._events.items()})
        return event


class ParticipantService:
    """
    Admin operations on participants

    Handles creation, lookup, deletion and state resets. Deleting
    participants can cascade to their access logs.
    """

    def __init__(self, participant_store: ParticipantStore, log_store: AccessLogStore,
                 event_service: Optional[EventService] = None):
        self.participant_store = participant_store
        self.log_store = log_store
        self.event_service = event_service

    def _check(self, actor: ActorContext, event_id: str, permission: str, action: str) -> None:
        require_permission(actor, permission, action)
        event = self.event_service.get_event(event_id) if self.event_service else None
        require_event_access(actor, event, event_id)

    def create_participant(self, actor: ActorContext, event_id: str, dni: str, nombre: str,
                           permisos: Optional[Permissions] = None, **info) -> Participant:
        """
        Create a participant with a fresh state

        Args:
            actor: Acting user
            event_id: Event partition
            dni: Natural key, unique per event
            nombre: Full name
            permisos: Grants; defaults to aula magna only
            **info: Optional informational fields (email, telefono, ...)

        Returns:
            The stored Participant

        Raises:
            DataValidationException: If dni or nombre is empty or the dni exists
        """
        self._check(actor, event_id, 'can_edit_participants', "create participants")
        dni = normalize_dni(dni)
        nombre = (nombre or '').strip()
        if not dni:
            raise DataValidationException("dni", "DNI is required")
        if not nombre:
            raise DataValidationException("nombre", "name is required")
        if self.participant_store.get_by_key(dni, event_id) is not None:
            raise DataValidationException("dni", f"participant '{dni}' already exists in this event")

        participant = Participant(
            dni=dni,
            nombre=nombre,
            event_id=event_id,
            permisos=permisos or Permissions(),
            email=info.get('email'),
            telefono=info.get('telefono'),
            escuela=info.get('escuela'),
            cargo=info.get('cargo'),
            entitat=info.get('entitat'),
            acceso=info.get('acceso'),
            ha_pagado=bool(info.get('ha_pagado', False)),
            ultima_actualizacion=now_millis(),
        )
        self.participant_store.save(participant)
        logger.info("Participant %s created in event %s by %s", dni, event_id, actor.uid)
        return participant

    def get_participant_or_raise(self, dni: str, event_id: str) -> Participant:
        """
        Get participant or raise exception if not found

        Raises:
            ParticipantNotFoundException: If the participant does not exist
        """
        dni = normalize_dni(dni)
        participant = self.participant_store.get_by_key(dni, event_id)
        if participant is None:
            raise ParticipantNotFoundException(dni, event_id)
        return participant

    def list_participants(self, actor: ActorContext, event_id: str) -> List[Participant]:
        self._check(actor, event_id, 'can_view_dashboard', "list participants")
        return self.participant_store.list_by_event(event_id)

    def count_participants(self, event_id: str) -> int:
        return len(self.participant_store.list_by_event(event_id))

    def delete_participant(self, actor: ActorContext, dni: str, event_id: str,
                           cascade_logs: bool = True) -> int:
        """
        Delete a participant, optionally with its access logs

        Returns:
            Number of access log entries removed

        Raises:
            ParticipantNotFoundException: If the participant does not exist
        """
        self._check(actor, event_id, 'can_edit_participants', "delete participants")
        dni = normalize_dni(dni)
        if not self.participant_store.delete(dni, event_id):
            raise ParticipantNotFoundException(dni, event_id)
        removed = self.log_store.delete_by_dni(dni, event_id) if cascade_logs else 0
        logger.info("Participant %s deleted from event %s (%d logs removed)", dni, event_id, removed)
        return removed

    def reset_event_states(self, actor: ActorContext, event_id: str) -> int:
        """
        Clear registration and presence flags of every participant of an event

        Returns:
            Number of participants reset
        """
        self._check(actor, event_id, 'can_reset_event', "reset events")
        cleared = {'estado.registrado': False, 'ultima_actualizacion': now_millis()}
        for mode in LOCATION_MODES:
            cleared[mode.state_field] = False
        participants = self.participant_store.list_by_event(event_id)
        for participant in participants:
            self.participant_store.upsert_fields(participant.dni, event_id, cleared)
        logger.info("Reset state of %d participants in event %s", len(participants), event_id)
        return len(participants)

    def delete_all_participants(self, actor: ActorContext, event_id: str) -> Tuple[int, int]:
        """
        Delete every participant of an event together with the event's logs

        Returns:
            Tuple of (participants removed, log entries removed)
        """
        self._check(actor, event_id, 'can_reset_event', "delete all participants")
        participants = self.participant_store.list_by_event(event_id)
        for participant in participants:
            self.participant_store.delete(participant.dni, event_id)
        removed_logs = self.log_store.delete_by_event(event_id)
        logger.info("Deleted %d participants and %d logs from event %s",
                    len(participants), removed_logs, event_id)
        return len(participants), removed_logs


class StatisticsService:
    """Dashboard figures computed from participants and access logs"""

    def __init__(self, participant_store: ParticipantStore, log_store: AccessLogStore):
        self.participant_store = participant_store
        self.log_store = log_store

    def access_stats(self, event_id: str, mode: AccessMode) -> Dict[str, int]:
        """
        Unique entrances and peak occupancy of a mode

        For registro both figures are the number of registered
        participants. For location modes the successful log entries are
        replayed in time order.

        Returns:
            Dictionary with ``unique_entrances`` and ``max_simultaneous``
        """
        if mode is AccessMode.REGISTRO:
            registered = sum(
                1 for p in self.participant_store.list_by_event(event_id) if p.estado.registrado
            )
            return {'unique_entrances': registered, 'max_simultaneous': registered}

        entered = set()
        inside = set()
        peak = 0
        for entry in self.log_store.list_by_event(event_id):
            if entry.modo is not mode or not entry.exitoso:
                continue
            if entry.direccion is Direction.ENTRADA:
                entered.add(entry.dni)
                inside.add(entry.dni)
                peak = max(peak, len(inside))
            else:
                inside.discard(entry.dni)
        return {'unique_entrances': len(entered), 'max_simultaneous': peak}

    def permission_counts(self, event_id: str) -> Dict[str, int]:
        """Participants per mode they hold a grant for; registro counts everyone"""
        participants = self.participant_store.list_by_event(event_id)
        counts = {AccessMode.REGISTRO.value: len(participants)}
        for mode in LOCATION_MODES:
            counts[mode.value] = sum(1 for p in participants if p.permisos.allows(mode))
        return counts

    def occupancy(self, event_id: str, mode: AccessMode) -> List[Participant]:
        """Participants currently flagged inside ``mode`` (registered ones for registro)"""
        return [
            p for p in self.participant_store.list_by_event(event_id) if p.estado.flag(mode)
        ]

    def recent_logs(self, event_id: str, mode: AccessMode, limit: int = 10) -> List[AccessLogEntry]:
        """Latest successful entries of a mode, newest first"""
        entries = [
            entry for entry in self.log_store.list_by_event(event_id)
            if entry.modo is mode and entry.exitoso
        ]
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return entries[:limit]
