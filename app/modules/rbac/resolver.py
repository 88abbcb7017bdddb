"""
Effective permission resolution.

Pure functions over immutable snapshots: no I/O, no logging, no shared state, so
they are safe to call concurrently. Precedence per catalog permission:

1. a user override decides outright (allow or deny);
2. otherwise the user's roles: any deny wins over any number of allows;
3. otherwise default deny.

Rows pointing at permissions missing from the catalog never reach the output.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from app.modules.rbac.schemas import (
    Effect,
    EffectivePermission,
    OrphanReport,
    Permission,
    PermissionCheckResult,
    PermissionSource,
    RolePermission,
    TraceStep,
    UserPermissionOverride,
)

DEFAULT_DENY_DETAILS = "Default deny (no matching rules)"
UNKNOWN_ROLE_NAME = "Unknown"
WILDCARD = "*"


def _role_label(role_ids: Iterable[str], role_names: Mapping[str, str]) -> str:
    # Display only: smallest name keeps details stable across input orderings
    names = sorted(role_names.get(role_id, UNKNOWN_ROLE_NAME) for role_id in role_ids)
    return names[0] if names else UNKNOWN_ROLE_NAME


def index_overrides(user_id: str, overrides: Iterable[UserPermissionOverride]) -> Dict[str, Effect]:
    """Map permission_id -> effect for `user_id`. Duplicate rows fold deny-first."""
    indexed: Dict[str, Effect] = {}
    for override in overrides:
        if override.user_id != user_id:
            continue
        if indexed.get(override.permission_id) == Effect.DENY:
            continue
        indexed[override.permission_id] = override.effect
    return indexed


def index_role_bindings(
    role_ids: Iterable[str],
    role_bindings: Iterable[RolePermission],
) -> Dict[str, Dict[Effect, List[str]]]:
    """Map permission_id -> {effect: [role_id, ...]} restricted to the user's roles."""
    assigned = frozenset(role_ids)
    indexed: Dict[str, Dict[Effect, List[str]]] = defaultdict(lambda: defaultdict(list))
    for binding in role_bindings:
        if binding.role_id in assigned:
            indexed[binding.permission_id][binding.effect].append(binding.role_id)
    return indexed


def evaluate_permission(
    permission: Permission,
    override: Optional[Effect],
    role_effects: Optional[Mapping[Effect, List[str]]],
    role_names: Mapping[str, str],
) -> EffectivePermission:
    """Decide one permission from its pre-indexed override and role effects."""
    base = {"permission_id": permission.id, "resource": permission.resource, "action": permission.action}

    if override is not None:
        return EffectivePermission(
            **base,
            allowed=override == Effect.ALLOW,
            source=PermissionSource.USER_OVERRIDE,
            details=f"User override: {override.value}",
        )

    denying = (role_effects or {}).get(Effect.DENY) or []
    allowing = (role_effects or {}).get(Effect.ALLOW) or []

    if denying:
        return EffectivePermission(
            **base,
            allowed=False,
            source=PermissionSource.ROLE,
            details=f"Denied by role: {_role_label(denying, role_names)}",
        )
    if allowing:
        return EffectivePermission(
            **base,
            allowed=True,
            source=PermissionSource.ROLE,
            details=f"Allowed by role: {_role_label(allowing, role_names)}",
        )
    return EffectivePermission(
        **base,
        allowed=False,
        source=PermissionSource.DENIED,
        details=DEFAULT_DENY_DETAILS,
    )


def resolve_effective_permissions(
    user_id: str,
    role_ids: Iterable[str],
    role_bindings: Iterable[RolePermission],
    overrides: Iterable[UserPermissionOverride],
    catalog: Iterable[Permission],
    role_names: Optional[Mapping[str, str]] = None,
) -> List[EffectivePermission]:
    """
    Compute one EffectivePermission per distinct catalog permission for `user_id`.

    Args:
        user_id: User being evaluated; overrides for other users are ignored.
        role_ids: The user's assigned roles (treated as a set).
        role_bindings: Role policy rows; rows for roles the user lacks are ignored.
        overrides: Per-user override rows.
        catalog: Permission catalog; the only permissions that can appear in the output.
        role_names: role_id -> name, used for the details text.

    Returns:
        Results ordered by (resource, action).
    """
    role_names = role_names or {}
    override_index = index_overrides(user_id, overrides)
    binding_index = index_role_bindings(role_ids, role_bindings)

    unique: Dict[str, Permission] = {}
    for permission in catalog:
        unique.setdefault(permission.id, permission)

    ordered = sorted(unique.values(), key=lambda p: (p.resource, p.action, p.id))
    return [
        evaluate_permission(
            permission,
            override_index.get(permission.id),
            binding_index.get(permission.id),
            role_names,
        )
        for permission in ordered
    ]


def find_orphans(
    role_bindings: Iterable[RolePermission],
    overrides: Iterable[UserPermissionOverride],
    catalog: Iterable[Permission],
) -> OrphanReport:
    """Rows referencing permission ids that are absent from the catalog."""
    known = {permission.id for permission in catalog}
    return OrphanReport(
        role_permissions=[b for b in role_bindings if b.permission_id not in known],
        overrides=[o for o in overrides if o.permission_id not in known],
    )


def lookup_permission(catalog: Iterable[Permission], resource: str, action: str) -> Optional[Permission]:
    """Exact match first, then `resource:*`, then `*:*`."""
    by_key: Dict[Tuple[str, str], Permission] = {}
    for permission in catalog:
        by_key.setdefault((permission.resource, permission.action), permission)
    for key in ((resource, action), (resource, WILDCARD), (WILDCARD, WILDCARD)):
        if key in by_key:
            return by_key[key]
    return None


def explain_permission(
    user_id: str,
    resource: str,
    action: str,
    role_ids: Iterable[str],
    role_bindings: Iterable[RolePermission],
    overrides: Iterable[UserPermissionOverride],
    catalog: Iterable[Permission],
    role_names: Optional[Mapping[str, str]] = None,
    user_active: bool = True,
) -> PermissionCheckResult:
    """Single (resource, action) decision with a step-by-step trace."""
    target = f"{resource}:{action}"
    if not user_active:
        return PermissionCheckResult(allowed=False, trace=[
            TraceStep(step="user_status", result="deny", reason="User not found or inactive"),
        ])

    permission = lookup_permission(catalog, resource, action)
    if permission is None:
        return PermissionCheckResult(allowed=False, trace=[
            TraceStep(step="permission_lookup", result="deny", reason=f"No permission defined for {target}"),
        ])

    trace = []
    if permission.name != target:
        trace.append(TraceStep(
            step="permission_lookup",
            result="skip",
            reason=f"No exact permission for {target}; using wildcard {permission.name}",
        ))

    decision = evaluate_permission(
        permission,
        index_overrides(user_id, overrides).get(permission.id),
        index_role_bindings(role_ids, role_bindings).get(permission.id),
        role_names or {},
    )
    verdict = "allow" if decision.allowed else "deny"

    if decision.source == PermissionSource.USER_OVERRIDE:
        reason = f"User has explicit {verdict} override for {target}"
        trace.append(TraceStep(step="user_override", result=verdict, reason=reason))
    elif decision.source == PermissionSource.ROLE:
        reason = f"At least one role has {verdict} for {target} ({decision.details})"
        trace.append(TraceStep(step="role_permissions", result=verdict, reason=reason))
    else:
        trace.append(TraceStep(step="default", result="deny", reason="No matching allow rules found - default deny"))

    return PermissionCheckResult(allowed=decision.allowed, trace=trace)
