"""
Check-in Scanner Package

An event check-in system built with Flask. Operators scan participant QR
codes to validate and record entry to the zones of an event (registration,
main hall, master class, dinner); administrators manage participants and
events through a role hierarchy.

Main Components:
- models: Data models for participants, access logs, events and users
- repositories: Participant and access log stores (memory, JSON, Redis, Google Sheets)
- resolver: QR payload parsing
- validation: Access decision table
- services: State transitions, access logging and admin services
- orchestrator: Scan pipeline with per-device single-flight
- exceptions: Custom exception classes for error handling
- app: Main Flask application class

Usage:
    from checkin_scanner import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

# Import main components for easy access
from .app import create_app, create_development_app, create_production_app
from .models import (
    AccessLogEntry,
    AccessMode,
    ActorContext,
    Direction,
    Event,
    Participant,
    ParticipantState,
    Permissions,
    ScanResult,
    User,
    UserRole,
)
from .orchestrator import InMemoryScanGate, RedisScanGate, ScanOrchestrator
from .repositories import RepositoryFactory
from .resolver import classify, resolve
from .services import (
    AccessLogWriter,
    AuthenticationService,
    EventService,
    ParticipantService,
    StateTransitionApplier,
    StatisticsService,
)
from .validation import validate
from .exceptions import (
    CheckinScannerException,
    ResolverError,
    ParticipantNotFoundException,
    ValidationDenied,
    StoreError,
    StateConflictError,
    AuthenticationFailedException,
    PermissionDeniedException,
    DataValidationException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'AccessLogEntry',
    'AccessMode',
    'ActorContext',
    'Direction',
    'Event',
    'Participant',
    'ParticipantState',
    'Permissions',
    'ScanResult',
    'User',
    'UserRole',

    # Scan pipeline
    'classify',
    'resolve',
    'validate',
    'ScanOrchestrator',
    'InMemoryScanGate',
    'RedisScanGate',

    # Services
    'AccessLogWriter',
    'AuthenticationService',
    'EventService',
    'ParticipantService',
    'StateTransitionApplier',
    'StatisticsService',

    # Repository factory
    'RepositoryFactory',

    # Exceptions
    'CheckinScannerException',
    'ResolverError',
    'ParticipantNotFoundException',
    'ValidationDenied',
    'StoreError',
    'StateConflictError',
    'AuthenticationFailedException',
    'PermissionDeniedException',
    'DataValidationException',
]
