import unittest

from checkin_scanner.exceptions import PermissionDeniedException
from checkin_scanner.models import Event, UserRole
from checkin_scanner.roles import (
    can_access_event,
    can_manage_role,
    creatable_roles,
    has_permission,
    require_event_access,
    require_permission,
    role_permissions,
)
from tests.helpers import EVENT_ID, ORG_ID, make_actor


class TestRoleHierarchy(unittest.TestCase):

    def test_creatable_roles(self):
        self.assertEqual(creatable_roles(UserRole.SUPER_ADMIN),
                         [UserRole.ADMIN_RESPONSABLE, UserRole.ADMIN, UserRole.CONTROLADOR])
        self.assertEqual(creatable_roles(UserRole.ADMIN_RESPONSABLE),
                         [UserRole.ADMIN, UserRole.CONTROLADOR])
        self.assertEqual(creatable_roles(UserRole.ADMIN), [UserRole.CONTROLADOR])
        self.assertEqual(creatable_roles(UserRole.CONTROLADOR), [])

    def test_no_role_manages_its_peers(self):
        for role in UserRole:
            with self.subTest(role=role):
                self.assertFalse(can_manage_role(role, role))

    def test_permission_table(self):
        table = role_permissions(UserRole.CONTROLADOR)
        self.assertTrue(table['can_scan_qr'])
        self.assertFalse(table['can_reset_event'])
        self.assertTrue(all(role_permissions(UserRole.SUPER_ADMIN).values()))
        self.assertFalse(role_permissions(UserRole.ADMIN_RESPONSABLE)['can_create_organization'])

    def test_require_permission(self):
        require_permission(make_actor(UserRole.ADMIN), 'can_reset_event', "reset events")
        with self.assertRaises(PermissionDeniedException) as ctx:
            require_permission(make_actor(), 'can_reset_event', "reset events")
        self.assertIn("controlador", ctx.exception.message)
        self.assertFalse(has_permission(make_actor(), 'can_edit_participants'))


class TestEventScope(unittest.TestCase):

    def setUp(self):
        self.event = Event(id=EVENT_ID, organization_id=ORG_ID, name="Congreso")

    def test_super_admin_reaches_everything(self):
        actor = make_actor(UserRole.SUPER_ADMIN, organization_id=None, assigned=())
        self.assertTrue(can_access_event(actor, self.event, EVENT_ID))

    def test_controller_limited_to_assigned_events(self):
        self.assertTrue(can_access_event(make_actor(), self.event, EVENT_ID))
        self.assertFalse(can_access_event(make_actor(assigned=("evt2",)), self.event, EVENT_ID))

    def test_admin_limited_to_organization(self):
        self.assertTrue(can_access_event(make_actor(UserRole.ADMIN), self.event, EVENT_ID))
        outsider = make_actor(UserRole.ADMIN, organization_id="org2")
        self.assertFalse(can_access_event(outsider, self.event, EVENT_ID))
        self.assertTrue(can_access_event(outsider, None, "unregistered"))
        with self.assertRaises(PermissionDeniedException):
            require_event_access(outsider, self.event, EVENT_ID)


if __name__ == '__main__':
    unittest.main()
