"""
Main Application Module for the Check-in Scanner

This module contains the Flask application class that wires the stores,
services and scan orchestrator together and exposes them as a JSON API
for the scanning screen and the admin dashboard.
"""

import logging
import os
from typing import Dict, Optional

from flask import Flask, jsonify, request, session

from .config import load_config
from .exceptions import (
    AuthenticationFailedException,
    CheckinScannerException,
    DataValidationException,
    ParticipantNotFoundException,
    PermissionDeniedException,
    StoreError,
)
from .logging_config import setup_logging
from .models import AccessMode, ActorContext, Direction, Permissions, UserRole
from .orchestrator import InMemoryScanGate, RedisScanGate, ScanGate, ScanOrchestrator
from .repositories import (
    AccessLogStore,
    DataRepository,
    ParticipantStore,
    RepositoryFactory,
    open_access_log_worksheet,
)
from .roles import require_event_access, require_permission
from .services import (
    AccessLogWriter,
    AuthenticationService,
    EventService,
    ParticipantService,
    StatisticsService,
)

logger = logging.getLogger(__name__)


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise DataValidationException(field_name, f"'{value}' is not one of: {allowed}")


class CheckinScannerApp:
    """
    Main Flask application class for the Check-in Scanner

    This class orchestrates all services and handles the HTTP interface
    of the check-in system.
    """

    def __init__(self, config: Optional[dict] = None,
                 participant_store: Optional[ParticipantStore] = None,
                 log_store: Optional[AccessLogStore] = None,
                 user_repository: Optional[DataRepository] = None,
                 event_repository: Optional[DataRepository] = None,
                 gate: Optional[ScanGate] = None):
        """
        Initialize the application

        Args:
            config: Optional configuration dictionary
            participant_store: Participant store; built from config when omitted
            log_store: Access log store; built from config when omitted
            user_repository: User repository; built from config when omitted
            event_repository: Event repository; built from config when omitted
            gate: Scan gate; built from config when omitted
        """
        self.config = load_config(config)
        setup_logging(self.config['LOG_LEVEL'], self.config['LOG_FILE'])

        # Initialize Flask app
        self.app = Flask(__name__)
        self._configure_app()

        # Initialize storage
        self._redis_client = None
        self.participant_store = participant_store or self._build_participant_store()
        self.log_store = log_store or self._build_log_store()
        self.user_repository = user_repository or self._build_repository('users.json')
        self.event_repository = event_repository or self._build_repository('events.json')

        # Initialize services
        self.auth_service = AuthenticationService(self.user_repository)
        self.event_service = EventService(self.event_repository)
        self.participant_service = ParticipantService(
            self.participant_store, self.log_store, self.event_service
        )
        self.statistics_service = StatisticsService(self.participant_store, self.log_store)
        self.orchestrator = ScanOrchestrator(
            self.participant_store,
            AccessLogWriter(self.log_store),
            gate=gate or self._build_gate(),
            event_service=self.event_service,
            auto_dismiss_seconds=float(self.config['AUTO_DISMISS_SECONDS']),
            scan_lock_timeout=float(self.config['SCAN_LOCK_TIMEOUT_SECONDS']),
            require_registration=bool(self.config['REQUIRE_REGISTRATION_FIRST']),
        )

        # Register routes
        self._register_routes()

        # Register error handlers
        self._register_error_handlers()

    def _configure_app(self) -> None:
        """Apply Flask settings from the effective configuration"""
        self.app.secret_key = self.config['SECRET_KEY']
        self.app.permanent_session_lifetime = self.config['PERMANENT_SESSION_LIFETIME']
        self.app.config['DEBUG'] = self.config['DEBUG']

    def _redis(self):
        if self._redis_client is None:
            self._redis_client = RepositoryFactory.create_redis_client(self.config)
        return self._redis_client

    def _build_repository(self, file_name: str) -> DataRepository:
        if self.config['STORAGE_BACKEND'] == 'memory':
            return RepositoryFactory.create_memory_repository()
        return RepositoryFactory.create_json_repository(
            os.path.join(self.config['DATA_DIR'], file_name)
        )

    def _build_participant_store(self) -> ParticipantStore:
        backend = self.config['STORAGE_BACKEND']
        if backend == 'redis':
            return RepositoryFactory.create_participant_store(
                'redis', client=self._redis(), prefix=self.config['REDIS_PREFIX']
            )
        if backend == 'json':
            return RepositoryFactory.create_participant_store(
                'json', file_path=os.path.join(self.config['DATA_DIR'], 'participants.json')
            )
        return RepositoryFactory.create_participant_store('memory')

    def _build_log_store(self) -> AccessLogStore:
        backend = self.config['ACCESS_LOG_BACKEND']
        if backend == 'sheets':
            worksheet = open_access_log_worksheet(
                self.config['GOOGLE_SERVICE_ACCOUNT_JSON'], self.config['ACCESS_LOG_SPREADSHEET']
            )
            return RepositoryFactory.create_access_log_store('sheets', worksheet=worksheet)
        if backend == 'redis':
            return RepositoryFactory.create_access_log_store(
                'redis', client=self._redis(), prefix=self.config['REDIS_PREFIX']
            )
        if backend == 'json':
            return RepositoryFactory.create_access_log_store(
                'json', file_path=os.path.join(self.config['DATA_DIR'], 'access_logs.json')
            )
        return RepositoryFactory.create_access_log_store('memory')

    def _build_gate(self) -> ScanGate:
        if self.config['STORAGE_BACKEND'] == 'redis':
            return RedisScanGate(self._redis(), self.config['REDIS_PREFIX'])
        return InMemoryScanGate()

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        add = self.app.add_url_rule
        add("/health", "health", self.health)
        add("/login", "login", self.login, methods=["POST"])
        add("/logout", "logout", self.logout, methods=["POST"])
        add("/scan", "scan", self.scan, methods=["POST"])
        add("/scan/ack", "acknowledge", self.acknowledge, methods=["POST"])
        add("/events", "events", self.events)
        add("/users", "create_user", self.create_user, methods=["POST"])
        add("/events/<event_id>/participants", "participants", self.participants,
            methods=["GET", "POST", "DELETE"])
        add("/events/<event_id>/participants/<dni>", "participant", self.participant,
            methods=["GET", "DELETE"])
        add("/events/<event_id>/reset", "reset_event", self.reset_event, methods=["POST"])
        add("/events/<event_id>/stats", "permission_counts", self.permission_counts)
        add("/events/<event_id>/stats/<mode>", "access_stats", self.access_stats)
        add("/events/<event_id>/occupancy/<mode>", "occupancy", self.occupancy)
        add("/events/<event_id>/logs/<mode>", "recent_logs", self.recent_logs)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        def error_response(e: CheckinScannerException, status: int):
            return jsonify({"error": e.error_code, "message": e.message}), status

        @self.app.errorhandler(AuthenticationFailedException)
        def handle_auth_failed(e):
            return error_response(e, 401)

        @self.app.errorhandler(PermissionDeniedException)
        def handle_permission_denied(e):
            return error_response(e, 403)

        @self.app.errorhandler(ParticipantNotFoundException)
        def handle_participant_not_found(e):
            return error_response(e, 404)

        @self.app.errorhandler(DataValidationException)
        def handle_validation(e):
            return error_response(e, 400)

        @self.app.errorhandler(StoreError)
        def handle_store_error(e):
            logger.error("Store error while serving %s: %s", request.path, e)
            return error_response(e, 503)

        @self.app.errorhandler(CheckinScannerException)
        def handle_checkin_exception(e):
            logger.error("Application error while serving %s: %s", request.path, e)
            return error_response(e, 500)

    def _current_actor(self) -> ActorContext:
        """
        Actor context of the logged-in user

        Raises:
            AuthenticationFailedException: If nobody is logged in
        """
        uid = session.get("uid")
        if not uid:
            raise AuthenticationFailedException()
        return self.auth_service.actor_for(uid)

    def _authorize(self, actor: ActorContext, event_id: str, permission: str, action: str) -> None:
        """
        Check the actor's permission and its reach over an event

        Raises:
            PermissionDeniedException: If the role lacks ``permission`` or
                the event is outside the actor's organization or assignments
        """
        require_permission(actor, permission, action)
        require_event_access(actor, self.event_service.get_event(event_id), event_id)

    @staticmethod
    def _json_body() -> Dict:
        return request.get_json(silent=True) or {}

    def health(self):
        return {"status": "healthy", "service": "checkin-scanner"}

    def login(self):
        """
        Login route

        Returns:
            The logged-in user's public fields
        """
        body = self._json_body()
        user = self.auth_service.authenticate(body.get("email", ""), body.get("password", ""))
        session.permanent = True
        session["uid"] = user.uid
        logger.info("User %s logged in", user.uid)
        return jsonify(user.to_dict())

    def logout(self):
        session.pop("uid", None)
        return jsonify({"status": "logged_out"})

    def scan(self):
        """
        Scan route - runs one scanned code through the pipeline

        Returns:
            The scan result, or ``{"dropped": true}`` while the device is busy
        """
        actor = self._current_actor()
        body = self._json_body()
        event_id = body.get("eventId")
        if not event_id:
            raise DataValidationException("eventId", "active event is required")
        mode = _parse_enum(AccessMode, body.get("mode", AccessMode.REGISTRO.value), "mode")
        direction = _parse_enum(Direction, body.get("direction", Direction.ENTRADA.value), "direction")

        result = self.orchestrator.on_scan(
            body.get("raw", ""), mode, direction, actor, event_id,
            device_id=body.get("deviceId"),
        )
        if result is None:
            return jsonify({"dropped": True})
        return jsonify(result.to_dict())

    def acknowledge(self):
        actor = self._current_actor()
        device_id = self._json_body().get("deviceId") or actor.uid
        self.orchestrator.acknowledge(device_id)
        return jsonify({"status": "ready", "deviceId": device_id})

    def events(self):
        actor = self._current_actor()
        return jsonify([event.to_dict() for event in self.event_service.events_for(actor)])

    def create_user(self):
        actor = self._current_actor()
        body = self._json_body()
        user = self.auth_service.create_user(
            actor,
            email=body.get("email", ""),
            username=body.get("username", ""),
            role=_parse_enum(UserRole, body.get("role"), "role"),
            password=body.get("password", ""),
            organization_id=body.get("organizationId"),
            assigned_event_ids=body.get("assignedEventIds"),
        )
        return jsonify(user.to_dict()), 201

    def participants(self, event_id: str):
        """
        Participant collection route

        GET lists, POST creates, DELETE removes every participant of the
        event together with its access logs.
        """
        actor = self._current_actor()
        if request.method == "POST":
            body = self._json_body()
            participant = self.participant_service.create_participant(
                actor, event_id, body.get("dni", ""), body.get("nombre", ""),
                permisos=Permissions.from_dict(body["permisos"]) if "permisos" in body else None,
                email=body.get("email"),
                telefono=body.get("telefono"),
                escuela=body.get("escuela"),
                cargo=body.get("cargo"),
                entitat=body.get("entitat"),
                acceso=body.get("acceso"),
                ha_pagado=body.get("haPagado", False),
            )
            return jsonify(participant.to_dict()), 201
        if request.method == "DELETE":
            participants, logs = self.participant_service.delete_all_participants(actor, event_id)
            return jsonify({"participantsDeleted": participants, "logsDeleted": logs})
        return jsonify([p.to_dict() for p in self.participant_service.list_participants(actor, event_id)])

    def participant(self, event_id: str, dni: str):
        actor = self._current_actor()
        if request.method == "DELETE":
            cascade = request.args.get("cascade", "true").lower() != "false"
            removed = self.participant_service.delete_participant(actor, dni, event_id, cascade)
            return jsonify({"deleted": dni, "logsDeleted": removed})
        self._authorize(actor, event_id, 'can_view_dashboard', "view participants")
        return jsonify(self.participant_service.get_participant_or_raise(dni, event_id).to_dict())

    def reset_event(self, event_id: str):
        actor = self._current_actor()
        count = self.participant_service.reset_event_states(actor, event_id)
        return jsonify({"reset": count})

    def permission_counts(self, event_id: str):
        actor = self._current_actor()
        self._authorize(actor, event_id, 'can_view_dashboard', "view statistics")
        return jsonify(self.statistics_service.permission_counts(event_id))

    def access_stats(self, event_id: str, mode: str):
        actor = self._current_actor()
        self._authorize(actor, event_id, 'can_view_dashboard', "view statistics")
        access_mode = _parse_enum(AccessMode, mode, "mode")
        return jsonify(self.statistics_service.access_stats(event_id, access_mode))

    def occupancy(self, event_id: str, mode: str):
        actor = self._current_actor()
        self._authorize(actor, event_id, 'can_view_dashboard', "view occupancy")
        access_mode = _parse_enum(AccessMode, mode, "mode")
        inside = self.statistics_service.occupancy(event_id, access_mode)
        return jsonify({"count": len(inside), "participants": [p.to_dict() for p in inside]})

    def recent_logs(self, event_id: str, mode: str):
        actor = self._current_actor()
        self._authorize(actor, event_id, 'can_view_logs', "view access logs")
        access_mode = _parse_enum(AccessMode, mode, "mode")
        limit = request.args.get("limit", 10, type=int)
        entries = self.statistics_service.recent_logs(event_id, access_mode, limit)
        return jsonify([entry.to_dict() for entry in entries])

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, **components) -> CheckinScannerApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        **components: Optional pre-built stores, repositories or gate

    Returns:
        Configured CheckinScannerApp instance
    """
    return CheckinScannerApp(config, **components)


def create_development_app() -> CheckinScannerApp:
    """Application with JSON-file storage and debug enabled"""
    return create_app({
        'DEBUG': True,
        'STORAGE_BACKEND': 'json',
        'SECRET_KEY': 'dev-secret-key-change-in-production',
    })


def create_production_app() -> CheckinScannerApp:
    """Application on Redis; the secret key must come from FLASK_SECRET_KEY"""
    return create_app({
        'DEBUG': False,
        'STORAGE_BACKEND': 'redis',
    })


if __name__ == "__main__":
    create_development_app().run(debug=True)
