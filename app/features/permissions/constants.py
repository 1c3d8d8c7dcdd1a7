"""
Permission codes checked by the API itself.

They belong to the core "organization" module, so they are available to every
organization regardless of plan.
"""
from enum import Enum


class AdminPermission(str, Enum):
    MODULES_VIEW = "organization.modules.view"
    MODULES_MANAGE = "organization.modules.manage"
    ROLES_MANAGE = "organization.roles.manage"
    MEMBERS_MANAGE = "organization.members.manage"
    SUBSCRIPTION_MANAGE = "organization.subscription.manage"


class SystemRole(str, Enum):
    """Roles seeded by the platform (is_system=True)."""
    OWNER = "Owner"
    ADMIN = "Admin"
    MEMBER = "Member"
