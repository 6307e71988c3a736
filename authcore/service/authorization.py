from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from authcore.logging import get_logger
from authcore.service.errors import AuthorizationDeniedError
from authcore.storage.models import AccountRole

logger = get_logger(__name__)

ACCESS_DENIED = "Access denied"
RESOURCE_ACCESS_DENIED = "Access denied to resource"

# Ordered permission snapshots per role; the order is preserved in access tokens.
ROLE_PERMISSIONS: Dict[AccountRole, Tuple[str, ...]] = {
    AccountRole.ADMIN: (
        "company:read",
        "company:write",
        "company:delete",
        "users:read",
        "users:write",
        "users:delete",
        "assessments:read",
        "assessments:write",
        "assessments:delete",
        "agents:read",
        "agents:write",
        "agents:delete",
        "analytics:read",
        "billing:read",
        "billing:write",
    ),
    AccountRole.USER: (
        "company:read",
        "assessments:read",
        "assessments:write",
        "agents:read",
        "analytics:read",
    ),
    AccountRole.VIEWER: (
        "company:read",
        "assessments:read",
        "agents:read",
        "analytics:read",
    ),
}

_ACTION_ALIASES: Dict[str, str] = {
    "get": "read",
    "read": "read",
    "view": "read",
    "list": "read",
    "head": "read",
    "post": "write",
    "create": "write",
    "add": "write",
    "put": "write",
    "patch": "write",
    "update": "write",
    "edit": "write",
    "write": "write",
    "delete": "delete",
    "remove": "delete",
}


@dataclass(frozen=True)
class Principal:
    """Verified identity attached to a request after authentication."""

    subject_id: str
    email: str
    tenant_id: str
    role: str
    permissions: Tuple[str, ...] = ()
    email_verified: bool = False

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


def permissions_for_role(role: str | AccountRole) -> Tuple[str, ...]:
    try:
        return ROLE_PERMISSIONS[AccountRole(role)]
    except ValueError:
        return ()


def map_action(action: str) -> Optional[str]:
    """Map an HTTP verb or verb word to read/write/delete; None if unknown."""
    return _ACTION_ALIASES.get((action or "").strip().lower())


def required_permission(resource: str, action: str) -> Optional[str]:
    mapped = map_action(action)
    if not mapped:
        return None
    return f"{resource}:{mapped}"


@dataclass(frozen=True)
class AccessPolicy:
    """Declarative authorization policy for one protected operation.

    ``resource_tenant_from`` derives the owning tenant of the target resource
    from the request (for example a path parameter). When set, a mismatch with
    the principal's tenant is always denied, whatever the role.
    """

    resource: str
    action: str
    allowed_roles: Optional[FrozenSet[str]] = None
    required_permissions: Tuple[str, ...] = field(default_factory=tuple)
    check_action_permission: bool = True
    resource_tenant_from: Optional[Callable[[Any], Optional[str]]] = None

    @classmethod
    def build(
        cls,
        resource: str,
        action: str,
        *,
        allowed_roles: Optional[Iterable[str | AccountRole]] = None,
        required_permissions: Iterable[str] = (),
        check_action_permission: bool = True,
        resource_tenant_from: Optional[Callable[[Any], Optional[str]]] = None,
    ) -> "AccessPolicy":
        roles = None
        if allowed_roles is not None:
            roles = frozenset(AccountRole(r).value for r in allowed_roles)
        return cls(
            resource=resource,
            action=action,
            allowed_roles=roles,
            required_permissions=tuple(required_permissions),
            check_action_permission=check_action_permission,
            resource_tenant_from=resource_tenant_from,
        )


def evaluate_policy(
    principal: Principal,
    policy: AccessPolicy,
    *,
    resource_tenant_id: Optional[str] = None,
) -> None:
    """Raise ``AuthorizationDeniedError`` unless ``principal`` satisfies ``policy``.

    Denials never say which role, permission or tenant would have passed.
    """
    if policy.allowed_roles is not None and principal.role not in policy.allowed_roles:
        logger.warning(
            "authorization_denied",
            reason="role",
            subject_id=principal.subject_id,
            role=principal.role,
            resource=policy.resource,
            action=policy.action,
        )
        raise AuthorizationDeniedError(ACCESS_DENIED)

    needed = list(policy.required_permissions)
    if policy.check_action_permission:
        derived = required_permission(policy.resource, policy.action)
        if derived:
            needed.append(derived)
    missing = [perm for perm in needed if not principal.has_permission(perm)]
    if missing:
        logger.warning(
            "authorization_denied",
            reason="permission",
            subject_id=principal.subject_id,
            missing=missing,
            resource=policy.resource,
            action=policy.action,
        )
        raise AuthorizationDeniedError(ACCESS_DENIED)

    tenant_scoped = policy.resource_tenant_from is not None or resource_tenant_id is not None
    # a declared tenant source that yields nothing is treated as a mismatch
    if tenant_scoped and resource_tenant_id != principal.tenant_id:
        logger.warning(
            "authorization_denied",
            reason="tenant",
            subject_id=principal.subject_id,
            principal_tenant=principal.tenant_id,
            resource_tenant=resource_tenant_id,
            resource=policy.resource,
        )
        raise AuthorizationDeniedError(RESOURCE_ACCESS_DENIED)
