"""
auth/roles.py -- Built-in roles and the role -> permission-set lookup.

A role is a name plus a set of opaque permission strings. There is no policy
language: authorization checks elsewhere ask Principal.has_permission(name).

The built-in roles mirror the platform's user types. They are seeded by
IdentityStore on startup and are system-protected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from auth.models import Role, UserType

if TYPE_CHECKING:
    from auth.store import IdentityStore

USER_MANAGEMENT = "USER_MANAGEMENT"
AUDIT_ACCESS = "AUDIT_ACCESS"
AUDIT_READ = "AUDIT_READ"

BUILTIN_ROLES: tuple[Role, ...] = (
    Role(
        name="SUPER_ADMIN",
        description="System administrator with full access",
        permissions=frozenset(
            {
                USER_MANAGEMENT,
                "ROLE_MANAGEMENT",
                "SYSTEM_CONFIG",
                AUDIT_ACCESS,
                "PROVIDER_MANAGEMENT",
                "BROKER_MANAGEMENT",
                "COMPANY_MANAGEMENT",
            }
        ),
        system_protected=True,
    ),
    Role(
        name="ADMIN",
        description="Administrator with management capabilities",
        permissions=frozenset(
            {USER_MANAGEMENT, "PROVIDER_MANAGEMENT", "BROKER_MANAGEMENT", "COMPANY_MANAGEMENT", AUDIT_READ}
        ),
        system_protected=True,
    ),
    Role(
        name="BROKER",
        description="Insurance broker with client management access",
        permissions=frozenset({"CLIENT_MANAGEMENT", "PLAN_MANAGEMENT", "QUOTE_GENERATION"}),
        system_protected=True,
    ),
    Role(
        name="PROVIDER",
        description="Insurance provider with plan management access",
        permissions=frozenset({"PLAN_MANAGEMENT", "PROVIDER_PROFILE", "BROKER_RELATIONS"}),
        system_protected=True,
    ),
    Role(
        name="COMPANY_USER",
        description="Company representative with portfolio access",
        permissions=frozenset({"COMPANY_PORTFOLIO", "EMPLOYEE_MANAGEMENT", "PLAN_SELECTION"}),
        system_protected=True,
    ),
)

# User types allowed through public self-registration. ADMIN accounts are
# created by an operator (main.py create-admin) or promoted by an admin.
SELF_REGISTRATION_TYPES: frozenset[UserType] = frozenset(
    {UserType.BROKER, UserType.PROVIDER, UserType.COMPANY_USER}
)


def role_for_user_type(user_type: UserType) -> str:
    """Return the role name a new identity of this user type is assigned."""
    return user_type.value


def permissions_for(store: IdentityStore, role_name: str) -> frozenset[str]:
    """Return the permission set for a role, or an empty set if the role is unknown."""
    role = store.get_role(role_name)
    return role.permissions if role is not None else frozenset()
