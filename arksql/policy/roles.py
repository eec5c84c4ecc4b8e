import logging
from enum import Enum
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"          # unrestricted
    DIOCESE_MANAGER = "diocese_manager"  # tenant-scoped
    SCHOOL_MANAGER = "school_manager"    # sub-tenant-scoped


class Resource(str, Enum):
    DIOCESE = "diocese"
    TESTING_CENTER = "testing_center"
    USER = "user"
    STUDENT = "student"
    TEST_RESULTS = "test_results"


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


# Numeric role ids carried by session tokens
NUMERIC_ROLES: Dict[int, Role] = {
    0: Role.SUPER_ADMIN,
    2: Role.DIOCESE_MANAGER,
    3: Role.SCHOOL_MANAGER,
}

# Role names issued by the assessment platform
NAMED_ROLES: Dict[str, Role] = {
    "ark admin": Role.SUPER_ADMIN,
    "diocese executive": Role.DIOCESE_MANAGER,
    "diocese admin": Role.DIOCESE_MANAGER,
}

NO_ACCESS_ROLES = {"student", "catechist candidate"}

ROLE_PERMISSIONS: Dict[Role, Dict[Resource, set]] = {
    Role.SUPER_ADMIN: {
        resource: {Permission.READ, Permission.WRITE, Permission.DELETE} for resource in Resource
    },
    Role.DIOCESE_MANAGER: {
        Resource.DIOCESE: {Permission.READ},
        Resource.TESTING_CENTER: {Permission.READ, Permission.WRITE},
        Resource.USER: {Permission.READ, Permission.WRITE},
        Resource.STUDENT: {Permission.READ},
        Resource.TEST_RESULTS: {Permission.READ},
    },
    Role.SCHOOL_MANAGER: {
        Resource.TESTING_CENTER: {Permission.READ},
        Resource.USER: {Permission.READ},
        Resource.STUDENT: {Permission.READ, Permission.WRITE},
        Resource.TEST_RESULTS: {Permission.READ},
    },
}


def role_from_claim(value: Union[int, str, None]) -> Optional[Role]:
    """Map a numeric or named role claim to a Role.

    Returns None for roles that must not reach the assistant at all
    (students and catechist candidates). Unknown roles fall back to the
    most restricted scope.
    """
    if value is None:
        return Role.SCHOOL_MANAGER
    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        return NUMERIC_ROLES.get(int(value), Role.SCHOOL_MANAGER)

    normalized = " ".join(str(value).split()).lower()
    if normalized in NO_ACCESS_ROLES:
        return None
    try:
        return Role(normalized)
    except ValueError:
        pass
    role = NAMED_ROLES.get(normalized)
    if role is None:
        logger.debug(f"[Roles] Unrecognised role '{value}', treating as {Role.SCHOOL_MANAGER.value}.")
        return Role.SCHOOL_MANAGER
    return role


def has_permission(role: Role, resource: Resource, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, {}).get(resource, set())
