"""
Scan Orchestrator

Runs one scan through resolve -> look up -> validate -> apply/log and turns
every outcome, including failures, into a ``ScanResult``. Nothing raised by
a stage escapes ``on_scan``.

Each scanning device processes one scan at a time. A scan arriving while
the device is busy (pipeline running, or a result still on screen) is
dropped: camera feeds deliver bursts of identical frames and queuing them
would process one physical scan several times. After an approval the
device frees itself after a short delay; after a denial it stays held until
the operator acknowledges the result.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import redis

from .exceptions import ResolverError, StateConflictError, StoreError, ValidationDenied
from .models import (
    AccessMode,
    ActorContext,
    Direction,
    Participant,
    ScanResult,
)
from .repositories import ParticipantStore
from .resolver import resolve
from .roles import can_access_event, has_permission
from .services import UNKNOWN_DNI, AccessLogWriter, EventService, StateTransitionApplier
from .validation import PARTICIPANT_NOT_FOUND, validate

logger = logging.getLogger(__name__)

IDLE = "idle"
RESOLVING = "resolving"
LOOKING_UP = "looking_up"
VALIDATING = "validating"
APPLYING = "applying"
LOGGING_DENIED = "logging_denied"
DONE = "done"

AUTO = "auto"
MANUAL = "manual"


class ScanGate(ABC):
    """Single-flight guard keyed by scanning device"""

    @abstractmethod
    def try_acquire(self, device_id: str, timeout: float) -> bool:
        """
        Claim a device for one scan

        Args:
            device_id: Scanning device or session
            timeout: Seconds after which an unreleased claim lapses

        Returns:
            False if the device is already busy
        """

    @abstractmethod
    def hold(self, device_id: str, seconds: Optional[float]) -> None:
        """Keep the device busy for ``seconds``, or until released when None"""

    @abstractmethod
    def release(self, device_id: str) -> None:
        """Free the device"""

    @abstractmethod
    def is_busy(self, device_id: str) -> bool:
        pass


class InMemoryScanGate(ScanGate):
    """Scan gate for devices served by a single process"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadlines: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()

    def _busy(self, device_id: str) -> bool:
        if device_id not in self._deadlines:
            return False
        deadline = self._deadlines[device_id]
        if deadline is not None and deadline <= self._clock():
            del self._deadlines[device_id]
            return False
        return True

    def _sweep(self) -> None:
        now = self._clock()
        expired = [device for device, deadline in self._deadlines.items()
                   if deadline is not None and deadline <= now]
        for device in expired:
            del self._deadlines[device]

    def try_acquire(self, device_id: str, timeout: float) -> bool:
        with self._lock:
            self._sweep()
            if self._busy(device_id):
                return False
            self._deadlines[device_id] = self._clock() + timeout
            return True

    def hold(self, device_id: str, seconds: Optional[float]) -> None:
        with self._lock:
            if seconds is not None and seconds <= 0:
                self._deadlines.pop(device_id, None)
            elif seconds is None:
                self._deadlines[device_id] = None
            else:
                self._deadlines[device_id] = self._clock() + seconds

    def release(self, device_id: str) -> None:
        with self._lock:
            self._deadlines.pop(device_id, None)

    def is_busy(self, device_id: str) -> bool:
        with self._lock:
            return self._busy(device_id)


class RedisScanGate(ScanGate):
    """
    Scan gate shared by several processes through Redis

    A device claim is ``SET NX`` with an expiry, so a crashed worker
    cannot wedge a device longer than the claim timeout.
    """

    def __init__(self, client: redis.Redis, prefix: str = "checkin"):
        self.client = client
        self.prefix = prefix

    def _key(self, device_id: str) -> str:
        return f"{self.prefix}:scan_gate:{device_id}"

    def try_acquire(self, device_id: str, timeout: float) -> bool:
        try:
            return bool(self.client.set(self._key(device_id), "in_flight",
                                        nx=True, px=int(timeout * 1000)))
        except redis.RedisError as e:
            raise StoreError("acquire", str(e))

    def hold(self, device_id: str, seconds: Optional[float]) -> None:
        try:
            if seconds is None:
                self.client.set(self._key(device_id), "awaiting_ack")
            elif seconds <= 0:
                self.client.delete(self._key(device_id))
            else:
                self.client.set(self._key(device_id), "showing_result", px=int(seconds * 1000))
        except redis.RedisError as e:
            raise StoreError("hold", str(e))

    def release(self, device_id: str) -> None:
        try:
            self.client.delete(self._key(device_id))
        except redis.RedisError as e:
            raise StoreError("release", str(e))

    def is_busy(self, device_id: str) -> bool:
        try:
            return bool(self.client.exists(self._key(device_id)))
        except redis.RedisError as e:
            raise StoreError("read", str(e))


@dataclass
class _ScanRun:
    """Mutable bookkeeping of one scan while it moves through the stages"""
    mode: AccessMode
    direction: Direction
    actor: Optional[ActorContext]
    event_id: str
    dni: Optional[str] = None
    participant: Optional[Participant] = None
    stages: List[str] = field(default_factory=lambda: [IDLE])
    warnings: List[str] = field(default_factory=list)
    logged: bool = False
    release_now: bool = False

    def enter(self, stage: str) -> None:
        self.stages.append(stage)


class ScanOrchestrator:
    """
    Sequences the scan pipeline for the scanning screen

    Stages run strictly one after another: the applier's write must see
    the validator's decision, which must see the state just read.
    """

    MAX_APPLY_ATTEMPTS = 3

    def __init__(self, participant_store: ParticipantStore, log_writer: AccessLogWriter,
                 applier: Optional[StateTransitionApplier] = None,
                 gate: Optional[ScanGate] = None,
                 event_service: Optional[EventService] = None,
                 auto_dismiss_seconds: float = 3.0,
                 scan_lock_timeout: float = 30.0,
                 require_registration: bool = False):
        """
        Initialize the orchestrator

        Args:
            participant_store: Source of participant records
            log_writer: Writer for the access log
            applier: State writer; defaults to one over ``participant_store``
            gate: Single-flight guard; defaults to an in-memory gate
            event_service: Optional event registry for mode checks
            auto_dismiss_seconds: How long an approval stays on screen
            scan_lock_timeout: Lapse time of an in-flight claim
            require_registration: Deny location modes before registration
        """
        self.participant_store = participant_store
        self.log_writer = log_writer
        self.applier = applier or StateTransitionApplier(participant_store)
        self.gate = gate or InMemoryScanGate()
        self.event_service = event_service
        self.auto_dismiss_seconds = auto_dismiss_seconds
        self.scan_lock_timeout = scan_lock_timeout
        self.require_registration = require_registration

    def on_scan(self, raw_text: str, mode: AccessMode, direction: Direction,
                actor: Optional[ActorContext], event_id: str,
                device_id: Optional[str] = None) -> Optional[ScanResult]:
        """
        Process one scanned code

        Args:
            raw_text: Text decoded from the QR code
            mode: Access mode selected on the scanning screen
            direction: Entry or exit
            actor: Scanning user
            event_id: Active event
            device_id: Scanning device; defaults to the actor's uid

        Returns:
            ScanResult, or None when the scan was dropped because the
            device is busy
        """
        device = device_id or (actor.uid if actor else "anonymous")
        gate_warning = None
        try:
            if not self.gate.try_acquire(device, self.scan_lock_timeout):
                logger.debug("Dropped scan on busy device %s", device)
                return None
        except StoreError as e:
            logger.warning("Scan gate unavailable for device %s: %s", device, e)
            gate_warning = f"duplicate-scan guard unavailable: {e.message}"

        run = _ScanRun(mode=mode, direction=direction, actor=actor, event_id=event_id)
        if gate_warning:
            run.warnings.append(gate_warning)
        try:
            result = self._process(run, raw_text)
        except ValidationDenied as e:
            result = self._deny(run, e.reason)
        except Exception as e:
            logger.exception("Unexpected error processing scan on device %s", device)
            run.release_now = True
            result = self._deny(run, f"error processing scan ({e})")
        self._settle(device, result, run.release_now)
        return result

    def acknowledge(self, device_id: str) -> None:
        """Operator dismissed the result; the device accepts scans again"""
        try:
            self.gate.release(device_id)
        except StoreError as e:
            logger.error("Could not release device %s: %s", device_id, e)

    def _settle(self, device: str, result: ScanResult, release_now: bool) -> None:
        try:
            if release_now:
                self.gate.release(device)
            elif result.allowed:
                self.gate.hold(device, self.auto_dismiss_seconds)
            else:
                self.gate.hold(device, None)
        except StoreError as e:
            logger.error("Could not update scan gate for device %s: %s", device, e)

    def _log(self, run: "_ScanRun", success: bool, message: str) -> None:
        if run.logged:
            return
        run.logged = True
        warning = self.log_writer.write(
            dni=run.dni or UNKNOWN_DNI,
            nombre=run.participant.nombre if run.participant else None,
            mode=run.mode,
            direction=run.direction,
            success=success,
            message=message,
            actor=run.actor,
            event_id=run.event_id,
            participant=run.participant,
        )
        if warning:
            run.warnings.append(warning)

    def _deny(self, run: "_ScanRun", message: str) -> ScanResult:
        if run.stages[-1] != LOGGING_DENIED:
            run.enter(LOGGING_DENIED)
        self._log(run, False, message)
        run.enter(DONE)
        return ScanResult(
            allowed=False,
            message=message,
            mode=run.mode,
            direction=run.direction,
            dni=run.dni,
            participant=run.participant,
            warnings=list(run.warnings),
            suggested_dismissal=MANUAL,
            dismiss_after=None,
            stages=list(run.stages),
        )

    def _allow(self, run: "_ScanRun", message: str, log_message: str) -> ScanResult:
        self._log(run, True, log_message)
        run.enter(DONE)
        return ScanResult(
            allowed=True,
            message=message,
            mode=run.mode,
            direction=run.direction,
            dni=run.dni,
            participant=run.participant,
            warnings=list(run.warnings),
            suggested_dismissal=AUTO,
            dismiss_after=self.auto_dismiss_seconds,
            stages=list(run.stages),
        )

    def _not_found_message(self, run: "_ScanRun") -> str:
        if run.actor is not None and run.actor.is_admin:
            hint = "To admit this participant, enroll them first in the administration section."
        else:
            hint = "If this participant should be enrolled, ask your administrator."
        return f"{PARTICIPANT_NOT_FOUND} (DNI: {run.dni}). {hint}"

    def _process(self, run: "_ScanRun", raw_text: str) -> ScanResult:
        run.enter(RESOLVING)
        try:
            key = resolve(raw_text, run.event_id)
        except ResolverError as e:
            run.dni = e.dni
            return self._deny(run, e.message)
        run.dni = key.dni

        if run.actor is not None and not (
            has_permission(run.actor, 'can_scan_qr')
            and can_access_event(run.actor, self._event(run.event_id), run.event_id)
        ):
            return self._deny(run, f"operator is not allowed to scan for event {run.event_id}")
        if self.event_service is not None and not self.event_service.is_mode_enabled(run.event_id, run.mode):
            return self._deny(run, f"mode {run.mode.value} is not enabled for this event")

        run.enter(LOOKING_UP)
        try:
            run.participant = self.participant_store.get_by_key(key.dni, run.event_id)
        except StoreError as e:
            run.release_now = True
            return self._deny(run, f"could not look up participant ({e.message})")
        if run.participant is None:
            return self._deny(run, self._not_found_message(run))

        run.enter(VALIDATING)
        decision = validate(run.participant, run.mode, run.direction,
                            key.name_hint, self.require_registration)
        if not decision.allowed:
            raise ValidationDenied(decision.reason)
        run.warnings.extend(decision.warnings)

        run.enter(APPLYING)
        return self._apply(run, decision.reason, key.name_hint)

    def _apply(self, run: "_ScanRun", reason: str, name_hint: Optional[str]) -> ScanResult:
        for _ in range(self.MAX_APPLY_ATTEMPTS):
            try:
                self.applier.apply(run.participant, run.mode, run.direction)
            except StateConflictError as e:
                logger.warning("State conflict for %s: %s", run.dni, e.details)
                try:
                    run.participant = self.participant_store.get_by_key(run.dni, run.event_id)
                except StoreError as read_error:
                    return self._deny(
                        run, f"participant changed by another device ({read_error.message})"
                    )
                fresh = validate(run.participant, run.mode, run.direction,
                                 name_hint, self.require_registration)
                if not fresh.allowed:
                    raise ValidationDenied(fresh.reason)
                continue
            except StoreError as e:
                logger.error("Could not save state of %s: %s", run.dni, e)
                warning = f"state not saved: {e.message}"
                run.warnings.append(warning)
                return self._allow(run, reason, f"{reason} ({warning})")
            self._mark_applied(run)
            return self._allow(run, reason, reason)
        return self._deny(run, "participant is being updated by another device, scan again")

    @staticmethod
    def _mark_applied(run: "_ScanRun") -> None:
        if run.mode is AccessMode.REGISTRO:
            run.participant.estado.registrado = True
        else:
            setattr(run.participant.estado, run.mode.state_flag, run.direction is Direction.ENTRADA)

    def _event(self, event_id: str):
        if self.event_service is None:
            return None
        return self.event_service.get_event(event_id)
