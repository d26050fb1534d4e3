"""
Role hierarchy and permission checks

super_admin > admin_responsable > admin > controlador. Every check takes
an explicit ``ActorContext``; nothing here reads ambient session state.
"""

from typing import Dict, List, Optional

from .exceptions import PermissionDeniedException
from .models import ActorContext, Event, UserRole

ROLE_LEVELS = {
    UserRole.SUPER_ADMIN: 4,
    UserRole.ADMIN_RESPONSABLE: 3,
    UserRole.ADMIN: 2,
    UserRole.CONTROLADOR: 1,
}

_ALL_PERMISSIONS = [
    'can_create_organization', 'can_view_all_organizations', 'can_edit_organization',
    'can_delete_organization', 'can_create_event', 'can_edit_event', 'can_delete_event',
    'can_reset_event', 'can_import_participants', 'can_export_data',
    'can_edit_participants', 'can_create_users', 'can_edit_users', 'can_delete_users',
    'can_assign_events', 'can_scan_qr', 'can_view_dashboard', 'can_view_logs',
]

_GRANTED = {
    UserRole.SUPER_ADMIN: set(_ALL_PERMISSIONS),
    UserRole.ADMIN_RESPONSABLE: set(_ALL_PERMISSIONS) - {
        'can_create_organization', 'can_view_all_organizations', 'can_delete_organization',
    },
    UserRole.ADMIN: {
        'can_create_event', 'can_edit_event', 'can_reset_event', 'can_import_participants',
        'can_export_data', 'can_edit_participants', 'can_create_users', 'can_edit_users',
        'can_assign_events', 'can_scan_qr', 'can_view_dashboard', 'can_view_logs',
    },
    UserRole.CONTROLADOR: {'can_scan_qr', 'can_view_dashboard', 'can_view_logs'},
}


def role_permissions(role: UserRole) -> Dict[str, bool]:
    """
    Full permission table of a role

    Args:
        role: User role

    Returns:
        Mapping of every permission name to whether the role holds it
    """
    granted = _GRANTED.get(role, set())
    return {name: name in granted for name in _ALL_PERMISSIONS}


def has_permission(actor: ActorContext, permission: str) -> bool:
    return permission in _GRANTED.get(actor.role, set())


def can_manage_role(manager: UserRole, target: UserRole) -> bool:
    """
    Check if a role can manage users of another role

    An admin manages only controllers; every other role manages the roles
    strictly below it.
    """
    if manager is UserRole.ADMIN:
        return target is UserRole.CONTROLADOR
    return ROLE_LEVELS[manager] > ROLE_LEVELS[target]


def creatable_roles(role: UserRole) -> List[UserRole]:
    """Roles a user of ``role`` may create, highest first"""
    return [target for target in UserRole if target is not role and can_manage_role(role, target)]


def can_access_event(actor: ActorContext, event: Optional[Event], event_id: str) -> bool:
    """
    Check whether the actor may act on an event

    Super admins reach every event. Controllers are limited to their
    assigned events. Other roles are limited to their organization's events
    when the event is known.
    """
    if actor.role is UserRole.SUPER_ADMIN:
        return True
    if actor.role is UserRole.CONTROLADOR:
        return event_id in actor.assigned_event_ids
    if event is None:
        return True
    return event.organization_id == actor.organization_id


def require_permission(actor: ActorContext, permission: str, action: str) -> None:
    """
    Raise unless the actor holds ``permission``

    Raises:
        PermissionDeniedException: If the role lacks the permission
    """
    if not has_permission(actor, permission):
        raise PermissionDeniedException(actor.role.value, action)


def require_event_access(actor: ActorContext, event: Optional[Event], event_id: str) -> None:
    if not can_access_event(actor, event, event_id):
        raise PermissionDeniedException(actor.role.value, f"act on event '{event_id}'")
