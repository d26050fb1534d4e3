import unittest
from unittest import mock

from werkzeug.security import generate_password_hash

from checkin_scanner.exceptions import (
    AuthenticationFailedException,
    DataValidationException,
    ParticipantNotFoundException,
    PermissionDeniedException,
    StateConflictError,
    StoreError,
)
from checkin_scanner.models import (
    AccessLogEntry,
    AccessMode,
    Direction,
    Event,
    Permissions,
    UserRole,
)
from checkin_scanner.repositories import RepositoryFactory
from checkin_scanner.services import (
    AccessLogWriter,
    AuthenticationService,
    EventService,
    ParticipantService,
    StateTransitionApplier,
    StatisticsService,
)
from tests.helpers import EVENT_ID, ORG_ID, make_actor, make_participant


class TestStateTransitionApplier(unittest.TestCase):

    def setUp(self):
        self.store = RepositoryFactory.create_participant_store('memory')
        self.participant = make_participant()
        self.store.save(self.participant)
        self.applier = StateTransitionApplier(self.store)

    def test_transition_for_registration(self):
        field, expected, new, extra = StateTransitionApplier.transition(
            self.participant, AccessMode.REGISTRO, Direction.SALIDA
        )
        self.assertEqual(field, "estado.registrado")
        self.assertFalse(expected)
        self.assertTrue(new)
        self.assertIn("timestamp_registro", extra)
        self.assertIn("ultima_actualizacion", extra)

    def test_transition_for_exit(self):
        self.participant.estado.en_cena = True
        field, expected, new, extra = StateTransitionApplier.transition(
            self.participant, AccessMode.CENA, Direction.SALIDA
        )
        self.assertEqual((field, expected, new), ("estado.en_cena", True, False))
        self.assertNotIn("timestamp_registro", extra)

    def test_apply_changes_only_target_flag(self):
        self.applier.apply(self.participant, AccessMode.MASTER_CLASS, Direction.ENTRADA)
        stored = self.store.get_by_key(self.participant.dni, EVENT_ID)
        self.assertTrue(stored.estado.en_master_class)
        self.assertFalse(stored.estado.registrado)
        self.assertFalse(stored.estado.en_aula_magna)

    def test_stale_snapshot_conflicts(self):
        self.applier.apply(self.participant, AccessMode.AULA_MAGNA, Direction.ENTRADA)
        with self.assertRaises(StateConflictError):
            self.applier.apply(self.participant, AccessMode.AULA_MAGNA, Direction.ENTRADA)


class TestAccessLogWriter(unittest.TestCase):

    def setUp(self):
        self.log_store = RepositoryFactory.create_access_log_store('memory')
        self.writer = AccessLogWriter(self.log_store)

    def test_entry_carries_actor_and_participant_snapshot(self):
        participant = make_participant()
        participant.email = "juan@example.com"
        warning = self.writer.write("12345678A", None, AccessMode.CENA, Direction.ENTRADA,
                                    True, "entry granted to cena", make_actor(), EVENT_ID, participant)
        self.assertIsNone(warning)
        entry = self.log_store.list_by_event(EVENT_ID)[0]
        self.assertEqual(entry.nombre, "Juan Perez")
        self.assertEqual(entry.email, "juan@example.com")
        self.assertEqual(entry.operador, "user-op1")
        self.assertEqual(entry.permisos, participant.permisos)

    def test_missing_context_still_writes(self):
        self.writer.write(None, None, AccessMode.AULA_MAGNA, Direction.SALIDA, False, "bad qr",
                          event_id=EVENT_ID)
        entry = self.log_store.list_by_event(EVENT_ID)[0]
        self.assertEqual(entry.dni, "unknown")
        self.assertEqual(entry.operador, "sistema")
        self.assertIsNone(entry.permisos)

    def test_store_failure_returns_warning(self):
        with mock.patch.object(self.log_store, 'append', side_effect=StoreError("append", "offline")):
            warning = self.writer.write("12345678A", "Juan", AccessMode.CENA, Direction.ENTRADA,
                                        True, "ok", event_id=EVENT_ID)
        self.assertTrue(warning.startswith("access log not recorded"))
        self.assertIn("offline", warning)

    def test_unexpected_failure_returns_warning(self):
        with mock.patch.object(self.log_store, 'append', side_effect=RuntimeError("socket closed")):
            warning = self.writer.write("12345678A", "Juan", AccessMode.CENA, Direction.ENTRADA,
                                        True, "ok", event_id=EVENT_ID)
        self.assertTrue(warning.startswith("access log not recorded"))
        self.assertIn("socket closed", warning)


class TestAuthenticationService(unittest.TestCase):

    def setUp(self):
        self.repository = RepositoryFactory.create_memory_repository({
            "root": {
                "email": "root@example.com",
                "username": "Root",
                "role": "super_admin",
                "password_hash": generate_password_hash("rootpass"),
            },
            "adm": {
                "email": "admin@example.com",
                "username": "Admin",
                "role": "admin",
                "password_hash": generate_password_hash("adminpass"),
                "organizationId": ORG_ID,
            },
        })
        self.service = AuthenticationService(self.repository)

    def test_authenticate(self):
        user = self.service.authenticate(" Admin@Example.com ", "adminpass")
        self.assertEqual(user.uid, "adm")
        with self.assertRaises(AuthenticationFailedException):
            self.service.authenticate("admin@example.com", "wrong")
        with self.assertRaises(AuthenticationFailedException):
            self.service.authenticate("", "")

    def test_actor_for_unknown_user(self):
        with self.assertRaises(AuthenticationFailedException):
            self.service.actor_for("ghost")
        self.assertTrue(self.service.actor_for("adm").is_admin)

    def test_admin_creates_controller_in_own_organization(self):
        actor = self.service.actor_for("adm")
        user = self.service.create_user(actor, "ctl@example.com", "Ctl", UserRole.CONTROLADOR,
                                        "secret", organization_id="elsewhere",
                                        assigned_event_ids=[EVENT_ID])
        self.assertEqual(user.organization_id, ORG_ID)
        self.assertEqual(self.service.authenticate("ctl@example.com", "secret").uid, user.uid)
        self.assertNotIn("password_hash", user.to_dict())
        self.assertIn("password_hash", self.repository.load_data()[user.uid])

    def test_admin_cannot_create_admin(self):
        with self.assertRaises(PermissionDeniedException):
            self.service.create_user(self.service.actor_for("adm"), "x@example.com", "X",
                                     UserRole.ADMIN, "secret")

    def test_duplicate_email_rejected(self):
        with self.assertRaises(DataValidationException):
            self.service.create_user(self.service.actor_for("root"), "ADMIN@example.com", "Dup",
                                     UserRole.ADMIN, "secret", organization_id=ORG_ID)

    def test_controller_cannot_create_users(self):
        with self.assertRaises(PermissionDeniedException):
            self.service.create_user(make_actor(), "x@example.com", "X", UserRole.CONTROLADOR, "pw")

    def test_invalid_user_document(self):
        repository = RepositoryFactory.create_memory_repository({"bad": {"email": "x"}})
        with self.assertRaises(DataValidationException):
            AuthenticationService(repository)


class TestEventService(unittest.TestCase):

    def setUp(self):
        self.repository = RepositoryFactory.create_memory_repository({
            EVENT_ID: {"organizationId": ORG_ID, "name": "Congreso",
                       "settings": {"accessModes": ["registro", "cena"]}},
            "evt2": {"organizationId": "org2", "name": "Jornada"},
        })
        self.service = EventService(self.repository)

    def test_mode_enabled(self):
        self.assertTrue(self.service.is_mode_enabled(EVENT_ID, AccessMode.CENA))
        self.assertFalse(self.service.is_mode_enabled(EVENT_ID, AccessMode.AULA_MAGNA))
        self.assertTrue(self.service.is_mode_enabled("evt2", AccessMode.AULA_MAGNA))
        self.assertTrue(self.service.is_mode_enabled("unknown", AccessMode.AULA_MAGNA))

    def test_events_for_each_role(self):
        ids = lambda events: sorted(e.id for e in events)
        self.assertEqual(ids(self.service.events_for(make_actor(UserRole.SUPER_ADMIN))), [EVENT_ID, "evt2"])
        self.assertEqual(ids(self.service.events_for(make_actor(UserRole.ADMIN))), [EVENT_ID])
        self.assertEqual(ids(self.service.events_for(make_actor(assigned=("evt2",)))), ["evt2"])

    def test_save_event_is_scoped_to_organization(self):
        admin = make_actor(UserRole.ADMIN)
        event = Event(id="evt3", organization_id=ORG_ID, name="Nuevo")
        self.service.save_event(admin, event)
        self.assertIn("evt3", self.repository.load_data())
        with self.assertRaises(PermissionDeniedException):
            self.service.save_event(admin, Event(id="evt4", organization_id="org2", name="Ajeno"))
        with self.assertRaises(PermissionDeniedException):
            self.service.save_event(make_actor(), Event(id="evt5", organization_id=ORG_ID, name="X"))


class TestParticipantService(unittest.TestCase):

    def setUp(self):
        self.participants = RepositoryFactory.create_participant_store('memory')
        self.logs = RepositoryFactory.create_access_log_store('memory')
        self.service = ParticipantService(self.participants, self.logs)
        self.admin = make_actor(UserRole.ADMIN, uid="adm")
        self.service.create_participant(self.admin, EVENT_ID, " 12345678A ", "Juan Perez",
                                        email="juan@example.com", ha_pagado=True)
        self.writer = AccessLogWriter(self.logs)

    def test_created_participant_defaults(self):
        participant = self.service.get_participant_or_raise("12345678A", EVENT_ID)
        self.assertEqual(participant.permisos, Permissions(aula_magna=True, master_class=False, cena=False))
        self.assertFalse(participant.estado.registrado)
        self.assertTrue(participant.ha_pagado)
        self.assertEqual(participant.email, "juan@example.com")

    def test_create_validation(self):
        with self.assertRaises(DataValidationException):
            self.service.create_participant(self.admin, EVENT_ID, "12345678A", "Again")
        with self.assertRaises(DataValidationException):
            self.service.create_participant(self.admin, EVENT_ID, "", "Nobody")
        with self.assertRaises(PermissionDeniedException):
            self.service.create_participant(make_actor(), EVENT_ID, "87654321B", "Ana")

    def test_dni_case_is_normalized(self):
        created = self.service.create_participant(self.admin, EVENT_ID, "87654321b", "Ana Garcia")
        self.assertEqual(created.dni, "87654321B")
        self.assertEqual(self.service.get_participant_or_raise("87654321b", EVENT_ID).dni, "87654321B")
        with self.assertRaises(DataValidationException):
            self.service.create_participant(self.admin, EVENT_ID, "12345678a", "Duplicate")
        guest = self.service.create_participant(self.admin, EVENT_ID, "Guest-7", "Invitado")
        self.assertEqual(guest.dni, "Guest-7")
        self.service.delete_participant(self.admin, "87654321b", EVENT_ID)
        self.assertIsNone(self.participants.get_by_key("87654321B", EVENT_ID))

    def test_get_missing_participant(self):
        with self.assertRaises(ParticipantNotFoundException):
            self.service.get_participant_or_raise("00000000X", EVENT_ID)

    def test_delete_cascades_to_logs(self):
        self.writer.write("12345678A", "Juan", AccessMode.CENA, Direction.ENTRADA, True, "ok",
                          event_id=EVENT_ID)
        self.writer.write("87654321B", "Ana", AccessMode.CENA, Direction.ENTRADA, False, "no",
                          event_id=EVENT_ID)
        self.assertEqual(self.service.delete_participant(self.admin, "12345678A", EVENT_ID), 1)
        self.assertEqual([e.dni for e in self.logs.list_by_event(EVENT_ID)], ["87654321B"])
        with self.assertRaises(ParticipantNotFoundException):
            self.service.delete_participant(self.admin, "12345678A", EVENT_ID)

    def test_delete_without_cascade_keeps_logs(self):
        self.writer.write("12345678A", "Juan", AccessMode.CENA, Direction.ENTRADA, True, "ok",
                          event_id=EVENT_ID)
        self.assertEqual(self.service.delete_participant(self.admin, "12345678A", EVENT_ID, False), 0)
        self.assertEqual(len(self.logs.list_by_event(EVENT_ID)), 1)

    def test_reset_event_states(self):
        self.participants.upsert_fields("12345678A", EVENT_ID,
                                        {"estado.registrado": True, "estado.en_cena": True})
        self.assertEqual(self.service.reset_event_states(self.admin, EVENT_ID), 1)
        participant = self.participants.get_by_key("12345678A", EVENT_ID)
        self.assertFalse(participant.estado.registrado)
        self.assertFalse(participant.estado.en_cena)
        self.assertEqual(participant.nombre, "Juan Perez")

    def test_delete_all_participants(self):
        self.service.create_participant(self.admin, EVENT_ID, "87654321B", "Ana")
        self.writer.write("12345678A", "Juan", AccessMode.CENA, Direction.ENTRADA, True, "ok",
                          event_id=EVENT_ID)
        self.assertEqual(self.service.delete_all_participants(self.admin, EVENT_ID), (2, 1))
        self.assertEqual(self.service.count_participants(EVENT_ID), 0)

    def test_controller_cannot_reset(self):
        with self.assertRaises(PermissionDeniedException):
            self.service.reset_event_states(make_actor(), EVENT_ID)


class TestStatisticsService(unittest.TestCase):

    def setUp(self):
        self.participants = RepositoryFactory.create_participant_store('memory')
        self.logs = RepositoryFactory.create_access_log_store('memory')
        self.stats = StatisticsService(self.participants, self.logs)
        self.participants.save(make_participant("12345678A", "Juan", registrado=True, en_cena=True))
        self.participants.save(make_participant(
            "87654321B", "Ana", permisos=Permissions(aula_magna=True, master_class=False, cena=False)
        ))

    def log(self, dni, direction, timestamp, exitoso=True, mode=AccessMode.CENA):
        entry = AccessLogEntry.create_new(dni, "x", mode, direction, exitoso, "m", "op", "op1", EVENT_ID)
        entry.timestamp = timestamp
        self.logs.append(entry)

    def test_access_stats_replays_logs(self):
        self.log("12345678A", Direction.ENTRADA, 1)
        self.log("87654321B", Direction.ENTRADA, 2)
        self.log("12345678A", Direction.SALIDA, 3)
        self.log("12345678A", Direction.ENTRADA, 4)
        self.log("99999999Z", Direction.ENTRADA, 5, exitoso=False)
        self.log("87654321B", Direction.ENTRADA, 6, mode=AccessMode.AULA_MAGNA)
        self.assertEqual(self.stats.access_stats(EVENT_ID, AccessMode.CENA),
                         {"unique_entrances": 2, "max_simultaneous": 2})

    def test_registration_stats_count_registered(self):
        self.assertEqual(self.stats.access_stats(EVENT_ID, AccessMode.REGISTRO),
                         {"unique_entrances": 1, "max_simultaneous": 1})

    def test_permission_counts(self):
        self.assertEqual(self.stats.permission_counts(EVENT_ID),
                         {"registro": 2, "aula_magna": 2, "master_class": 1, "cena": 1})

    def test_occupancy(self):
        self.assertEqual([p.dni for p in self.stats.occupancy(EVENT_ID, AccessMode.CENA)], ["12345678A"])
        self.assertEqual(self.stats.occupancy(EVENT_ID, AccessMode.AULA_MAGNA), [])

    def test_recent_logs_newest_first(self):
        for timestamp in (1, 5, 3):
            self.log("12345678A", Direction.ENTRADA, timestamp)
        self.log("12345678A", Direction.ENTRADA, 9, exitoso=False)
        recent = self.stats.recent_logs(EVENT_ID, AccessMode.CENA, limit=2)
        self.assertEqual([e.timestamp for e in recent], [5, 3])


if __name__ == '__main__':
    unittest.main()
