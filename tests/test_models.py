import unittest

from checkin_scanner.models import (
    AccessLogEntry,
    AccessMode,
    ActorContext,
    Direction,
    Event,
    Participant,
    Permissions,
    User,
    UserRole,
)
from tests.helpers import make_participant


class TestParticipant(unittest.TestCase):

    def test_missing_flags_default_to_false(self):
        participant = Participant.from_dict({"dni": "12345678A", "nombre": "Juan", "permisos": {}}, "evt1")
        self.assertEqual(participant.event_id, "evt1")
        self.assertFalse(participant.permisos.aula_magna)
        self.assertFalse(participant.estado.registrado)
        self.assertEqual(participant.version, 0)

    def test_wire_names(self):
        data = make_participant().to_dict()
        self.assertIn("haPagado", data)
        self.assertEqual(data["eventId"], "evt1")
        self.assertEqual(Participant.from_dict(data), make_participant())

    def test_missing_required_field(self):
        with self.assertRaises(KeyError):
            Participant.from_dict({"dni": "12345678A"})


class TestAccessMode(unittest.TestCase):

    def test_state_fields(self):
        self.assertEqual(AccessMode.REGISTRO.state_field, "estado.registrado")
        self.assertEqual(AccessMode.CENA.state_field, "estado.en_cena")
        self.assertFalse(AccessMode.REGISTRO.is_location)

    def test_registro_is_never_gated(self):
        self.assertTrue(Permissions(False, False, False).allows(AccessMode.REGISTRO))
        self.assertFalse(Permissions(True, False, False).allows(AccessMode.MASTER_CLASS))


class TestAccessLogEntry(unittest.TestCase):

    def test_create_new_snapshots_participant(self):
        participant = make_participant()
        participant.cargo = "Director"
        entry = AccessLogEntry.create_new("12345678A", "Juan Perez", AccessMode.CENA, Direction.SALIDA,
                                          True, "exit granted from cena", "Ana", "u1", "evt1", participant)
        self.assertEqual(len(entry.id), 32)
        self.assertEqual(entry.cargo, "Director")
        data = entry.to_dict()
        self.assertEqual(data["operadorUid"], "u1")
        self.assertEqual(data["modo"], "cena")
        self.assertEqual(AccessLogEntry.from_dict(data), entry)


class TestEventAndUser(unittest.TestCase):

    def test_event_access_modes(self):
        event = Event.from_dict("evt1", {"organizationId": "org1", "name": "Congreso",
                                         "settings": {"accessModes": ["registro", "cena"]}})
        self.assertTrue(event.is_mode_enabled(AccessMode.CENA))
        self.assertFalse(event.is_mode_enabled(AccessMode.AULA_MAGNA))
        self.assertEqual(Event.from_dict("evt1", event.to_dict()), event)

    def test_actor_from_user(self):
        user = User(uid="u1", email="a@example.com", username="Ana", role=UserRole.CONTROLADOR,
                    password_hash="x", organization_id="org1", assigned_event_ids=["evt1"])
        actor = ActorContext.from_user(user)
        self.assertEqual(actor.assigned_event_ids, ("evt1",))
        self.assertFalse(actor.is_admin)
        self.assertEqual(actor.display_name, "Ana")
        self.assertNotIn("password_hash", user.to_dict())


if __name__ == '__main__':
    unittest.main()
