"""Shared builders for the test suite"""

from checkin_scanner.models import (
    ActorContext,
    Participant,
    ParticipantState,
    Permissions,
    UserRole,
)
from checkin_scanner.orchestrator import InMemoryScanGate, ScanOrchestrator
from checkin_scanner.repositories import RepositoryFactory
from checkin_scanner.services import AccessLogWriter

EVENT_ID = "evt1"
ORG_ID = "org1"


def make_participant(dni="12345678A", nombre="Juan Perez", event_id=EVENT_ID,
                     permisos=None, **state) -> Participant:
    return Participant(
        dni=dni,
        nombre=nombre,
        event_id=event_id,
        permisos=permisos or Permissions(aula_magna=True, master_class=True, cena=True),
        estado=ParticipantState(**state),
    )


def make_actor(role=UserRole.CONTROLADOR, uid="op1", organization_id=ORG_ID,
               assigned=(EVENT_ID,)) -> ActorContext:
    return ActorContext(
        uid=uid,
        role=role,
        organization_id=organization_id,
        username=f"user-{uid}",
        assigned_event_ids=tuple(assigned),
    )


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def build_pipeline(*participants, **kwargs):
    """
    Orchestrator over in-memory stores

    Returns:
        Tuple of (orchestrator, participant store, log store)
    """
    participant_store = RepositoryFactory.create_participant_store('memory')
    log_store = RepositoryFactory.create_access_log_store('memory')
    for participant in participants:
        participant_store.save(participant)
    kwargs.setdefault('gate', InMemoryScanGate(FakeClock()))
    orchestrator = ScanOrchestrator(participant_store, AccessLogWriter(log_store), **kwargs)
    return orchestrator, participant_store, log_store

