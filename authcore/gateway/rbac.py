"""
authcore - Role-Based Access Control (RBAC)

Module/action permission checks for built-in and admin-defined roles.
The built-in matrix is defined in policies.yaml and loaded once at import.
Custom roles are loaded from the identity store on first use and cached
until an admin update or delete invalidates them.

Security:
- Deny-by-default: unknown role, module or action is denied
- Role hierarchy is NOT inherited (explicit grants only)
- A custom role that cannot be loaded is denied and not cached
- Custom role JSON goes through an allow-list; unknown entries are dropped
"""

import threading
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Union
from uuid import UUID

import yaml

from authcore.auth.errors import PermissionDenied
from authcore.auth.models import CustomRole, Role
from authcore.logging import get_logger

logger = get_logger(__name__)

POLICY_PATH = Path(__file__).parent / "policies.yaml"


class Module(str, Enum):
    """Application areas guarded by permissions."""
    CRM = "crm"
    ERP = "erp"
    PM = "pm"
    KB = "kb"
    CONTENT = "content"
    SUPPORT = "support"
    ADMIN = "admin"
    PORTAL = "portal"
    CHAT = "chat"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    APPROVE = "approve"
    ADMIN = "admin"


Grant = Tuple[Module, Action]
GrantSet = FrozenSet[Grant]

# role_id -> grants, or None when the role does not exist
RoleLoader = Callable[[str], Optional[GrantSet]]


def _coerce(enum_cls, value) -> Optional[Enum]:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def parse_permission_grants(raw: Any) -> GrantSet:
    """
    Convert a {module: [action, ...]} mapping into a grant set.

    Only known (module, action) pairs survive; anything else in the
    mapping, including malformed values, is ignored.

    Example:
        >>> sorted(parse_permission_grants({"crm": ["read", "fly"], "x": ["read"]}))
        [(<Module.CRM: 'crm'>, <Action.READ: 'read'>)]
    """
    if not isinstance(raw, Mapping):
        return frozenset()

    grants = set()
    for module_name, actions in raw.items():
        module = _coerce(Module, module_name)
        if module is None or not isinstance(actions, (list, tuple, set, frozenset)):
            continue
        for action_name in actions:
            action = _coerce(Action, action_name)
            if action is not None:
                grants.add((module, action))
    return frozenset(grants)


def load_builtin_matrix(path: Path = POLICY_PATH) -> Mapping[str, GrantSet]:
    """
    Load the built-in role matrix from YAML.

    Roles in the file that are not built-in Role values are skipped.
    A missing file yields an empty matrix, which denies everything.
    """
    if not path.exists():
        logger.warning("policy_file_missing", path=str(path))
        return MappingProxyType({})

    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    matrix: Dict[str, GrantSet] = {}
    for role_name, modules in (config.get("roles") or {}).items():
        role = _coerce(Role, role_name)
        if role is None:
            logger.warning("policy_unknown_role", role=role_name)
            continue
        matrix[role.value] = parse_permission_grants(modules)
    return MappingProxyType(matrix)


BUILTIN_MATRIX = load_builtin_matrix()


class PermissionCache:
    """
    Process-wide cache of custom role grants.

    No TTL: entries live until invalidate() is called, so every path that
    changes or deletes a CustomRole must call it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, GrantSet] = {}
        self._generations: Dict[str, int] = {}

    def __contains__(self, role_id: str) -> bool:
        with self._lock:
            return role_id in self._entries

    def get_or_load(self, role_id: str, loader: RoleLoader) -> Optional[GrantSet]:
        """
        Return cached grants, loading them on a miss.

        The loader runs outside the lock. A result is only stored if no
        invalidation happened while it was loading, so a stale definition
        cannot be cached over a newer one. A None result is not cached.
        """
        with self._lock:
            cached = self._entries.get(role_id)
            if cached is not None:
                return cached
            generation = self._generations.get(role_id, 0)

        grants = loader(role_id)
        if grants is None:
            return None

        with self._lock:
            if self._generations.get(role_id, 0) == generation:
                self._entries[role_id] = grants
        return grants

    def invalidate(self, role_id: str) -> bool:
        """Drop a role's entry. Returns True if one was cached."""
        with self._lock:
            self._generations[role_id] = self._generations.get(role_id, 0) + 1
            return self._entries.pop(role_id, None) is not None


def sql_role_loader(session_factory) -> RoleLoader:
    """
    Build a loader reading CustomRole rows through session_factory.

    The resolver only passes canonical UUID strings and treats any loader
    error as a denial.
    """
    def load(role_id: str) -> Optional[GrantSet]:
        with session_factory() as db:
            role = db.get(CustomRole, UUID(role_id))
            if role is None:
                return None
            return parse_permission_grants(role.permissions)

    return load


def _label(value: Union[str, Enum]) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def custom_role_key(role_id: Union[str, UUID]) -> Optional[str]:
    """
    Canonical cache key for a custom role id, or None if it is not a UUID.

    Example:
        >>> custom_role_key("6F9619FF-8B86-D011-B42D-00CF4FC964FF")
        '6f9619ff-8b86-d011-b42d-00cf4fc964ff'
    """
    if isinstance(role_id, UUID):
        return str(role_id)
    try:
        return str(UUID(str(role_id)))
    except ValueError:
        return None


class PermissionResolver:
    """
    Usage:
        resolver = PermissionResolver(PermissionCache(), sql_role_loader(factory))
        resolver.require_permission("SUPPORT", Module.SUPPORT, Action.READ)
    """

    def __init__(
        self,
        cache: PermissionCache,
        loader: RoleLoader,
        matrix: Optional[Mapping[str, GrantSet]] = None,
    ) -> None:
        self.cache = cache
        self.loader = loader
        self.matrix = BUILTIN_MATRIX if matrix is None else matrix

    def _grants_for(self, role: str) -> Optional[GrantSet]:
        builtin = self.matrix.get(role)
        if builtin is not None:
            return builtin
        key = custom_role_key(role)
        if key is None:
            # Neither built-in nor a custom role id
            logger.debug("unknown_role", role=role)
            return None
        try:
            return self.cache.get_or_load(key, self.loader)
        except Exception:
            logger.exception("custom_role_load_failed", role=key)
            return None

    def has_permission(
        self,
        role: Union[str, Role, UUID],
        module: Union[str, Module],
        action: Union[str, Action],
    ) -> bool:
        """
        Check whether a role may perform an action on a module.

        Args:
            role: Built-in role name, or a CustomRole id
            module: Module name
            action: Action name

        Returns:
            True if granted, False otherwise (deny-by-default)
        """
        module_ = _coerce(Module, module)
        action_ = _coerce(Action, action)
        if module_ is None or action_ is None or not role:
            return False

        grants = self._grants_for(_label(role))
        if grants is None:
            return False
        return (module_, action_) in grants

    def require_permission(
        self,
        role: Union[str, Role, UUID],
        module: Union[str, Module],
        action: Union[str, Action],
    ) -> None:
        """
        Raises:
            PermissionDenied: If the role lacks the permission
        """
        if not self.has_permission(role, module, action):
            role_label, module_label, action_label = _label(role), _label(module), _label(action)
            logger.warning(
                "permission_denied",
                role=role_label,
                module=module_label,
                action=action_label,
            )
            raise PermissionDenied(
                f"Permission denied: {role_label} cannot {action_label} on {module_label}"
            )

    def effective_role(self, identity) -> str:
        """The role key checks run against: custom role if assigned."""
        if getattr(identity, "custom_role_id", None):
            return _label(identity.custom_role_id)
        return _label(identity.role)

    def for_identity(self, identity, module, action) -> bool:
        """has_permission for an authenticated identity."""
        return self.has_permission(self.effective_role(identity), module, action)

    def require_for_identity(self, identity, module, action) -> None:
        self.require_permission(self.effective_role(identity), module, action)

    def invalidate(self, role_id: Union[str, UUID]) -> None:
        key = custom_role_key(role_id)
        if key is None:
            return
        dropped = self.cache.invalidate(key)
        logger.info("custom_role_invalidated", role_id=key, was_cached=dropped)
