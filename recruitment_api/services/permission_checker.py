"""
Permission checks for management users.

Admins pass every check. Other users need a grant for one of the requested
actions, either on one of the given resources or, when no resource is given,
on any resource.
"""

import logging
from typing import List, Optional

from recruitment_sync.interfaces import PermissionStore

logger = logging.getLogger(__name__)

ACTION_CREATE_RECRUITMENT_LIST = "create-recruitment-list"
ACTION_MANAGE_RECRUITMENT_LIST = "manage-recruitment-list"
ACTION_DELETE_RECRUITMENT_LIST = "delete-recruitment-list"
ACTION_ACCESS_RECRUITMENT_LIST = "access-recruitment-list"

ALL_ACTIONS = [
    ACTION_CREATE_RECRUITMENT_LIST,
    ACTION_MANAGE_RECRUITMENT_LIST,
    ACTION_DELETE_RECRUITMENT_LIST,
    ACTION_ACCESS_RECRUITMENT_LIST,
]

# Holding any of these on a list grants read access to it
ACCESS_ACTIONS = [
    ACTION_ACCESS_RECRUITMENT_LIST,
    ACTION_MANAGE_RECRUITMENT_LIST,
    ACTION_DELETE_RECRUITMENT_LIST,
]


def is_authorized(
    store: PermissionStore,
    user_id: str,
    is_admin: bool,
    actions: List[str],
    resource_ids: Optional[List[str]] = None,
) -> bool:
    if is_admin:
        return True

    permissions = store.get_specific_permissions_by_user_id(user_id, actions, resource_ids or [])
    if not permissions:
        logger.warning(f"User {user_id} is not permitted to {actions} on {resource_ids or 'any resource'}")
        return False
    return True


def accessible_list_ids(store: PermissionStore, user_id: str) -> List[str]:
    """Ids of the lists a non-admin user may read."""
    permissions = store.get_permissions_by_user_id(user_id)
    return sorted({p.resource_id for p in permissions if p.action in ACCESS_ACTIONS and p.resource_id})
