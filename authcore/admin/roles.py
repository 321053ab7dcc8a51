"""
authcore - Custom Role Administration

Create, change, delete and assign admin-defined roles. Every path that
changes or deletes a role invalidates its cached grants so the next
permission check sees the stored definition.
"""

from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DBSession, select

from authcore.audit.activity import ActivityLog
from authcore.auth.errors import NotFound, PermissionDenied, RoleConflict
from authcore.auth.models import CustomRole, User, utcnow
from authcore.gateway.rbac import Action, Module, PermissionResolver, parse_permission_grants
from authcore.logging import get_logger

logger = get_logger(__name__)


def normalize_permissions(raw: Any) -> Dict[str, List[str]]:
    """
    Reduce a permissions mapping to known modules and actions, in enum
    order, so what is stored is exactly what the resolver will grant.
    """
    grants = parse_permission_grants(raw)
    normalized: Dict[str, List[str]] = {}
    for module in Module:
        actions = [action.value for action in Action if (module, action) in grants]
        if actions:
            normalized[module.value] = actions
    return normalized


class RoleAdministration:

    def __init__(self, resolver: PermissionResolver, activity: Optional[ActivityLog] = None) -> None:
        self.resolver = resolver
        self.activity = activity or ActivityLog()

    def _get(self, db: DBSession, role_id: UUID) -> CustomRole:
        role = db.get(CustomRole, role_id)
        if role is None:
            raise NotFound("Role not found")
        return role

    def _name_taken(self, db: DBSession, name: str, exclude: Optional[UUID] = None) -> bool:
        statement = select(CustomRole).where(CustomRole.name == name)
        existing = db.exec(statement).first()
        return existing is not None and existing.id != exclude

    def count_assigned(self, db: DBSession, role_id: UUID) -> int:
        statement = select(func.count()).select_from(User).where(User.custom_role_id == role_id)
        return db.exec(statement).one()

    async def list_roles(self, db: DBSession) -> List[Tuple[CustomRole, int]]:
        roles = db.exec(select(CustomRole).order_by(CustomRole.name)).all()
        return [(role, self.count_assigned(db, role.id)) for role in roles]

    async def get_role(self, db: DBSession, role_id: UUID) -> CustomRole:
        return self._get(db, role_id)

    async def create_role(
        self,
        db: DBSession,
        name: str,
        permissions: Dict[str, List[str]],
        description: Optional[str] = None,
        is_system: bool = False,
        actor_id: Optional[str] = None,
    ) -> CustomRole:
        """
        Raises:
            RoleConflict: Name already used
        """
        name = name.strip()
        if self._name_taken(db, name):
            raise RoleConflict("A role with this name already exists")

        role = CustomRole(
            name=name,
            description=description,
            permissions=normalize_permissions(permissions),
            is_system=is_system,
        )
        db.add(role)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise RoleConflict("A role with this name already exists") from e
        db.refresh(role)

        self.activity.log(
            "ROLE_CREATED", user_id=actor_id, entity_type="ROLE", entity_id=str(role.id)
        )
        return role

    async def update_role(
        self,
        db: DBSession,
        role_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Dict[str, List[str]]] = None,
        actor_id: Optional[str] = None,
    ) -> CustomRole:
        """
        Apply the given fields; None leaves a field unchanged.

        Raises:
            NotFound: No such role
            RoleConflict: New name already used by another role
        """
        role = self._get(db, role_id)

        if name is not None:
            name = name.strip()
            if name != role.name and self._name_taken(db, name, exclude=role.id):
                raise RoleConflict("A role with this name already exists")
            role.name = name
        if description is not None:
            role.description = description
        if permissions is not None:
            role.permissions = normalize_permissions(permissions)
        role.updated_at = utcnow()

        db.add(role)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise RoleConflict("A role with this name already exists") from e
        db.refresh(role)

        self.resolver.invalidate(role.id)
        self.activity.log(
            "ROLE_UPDATED", user_id=actor_id, entity_type="ROLE", entity_id=str(role.id)
        )
        return role

    async def delete_role(
        self, db: DBSession, role_id: UUID, actor_id: Optional[str] = None
    ) -> None:
        """
        Raises:
            NotFound: No such role
            PermissionDenied: System roles cannot be deleted
            RoleConflict: Role still assigned to users
        """
        role = self._get(db, role_id)
        if role.is_system:
            raise PermissionDenied("System roles cannot be deleted")

        assigned = self.count_assigned(db, role_id)
        if assigned > 0:
            raise RoleConflict(
                f"Role is assigned to {assigned} user(s). Reassign them before deleting."
            )

        db.delete(role)
        db.commit()

        self.resolver.invalidate(role_id)
        self.activity.log(
            "ROLE_DELETED", user_id=actor_id, entity_type="ROLE", entity_id=str(role_id)
        )

    async def assign_role(
        self,
        db: DBSession,
        user_id: UUID,
        custom_role_id: Optional[UUID],
        actor_id: Optional[str] = None,
    ) -> User:
        """
        Set or clear a user's custom role. Clearing falls back to the
        built-in role.

        Raises:
            NotFound: No such user or role
        """
        user = db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        if custom_role_id is not None:
            self._get(db, custom_role_id)

        user.custom_role_id = custom_role_id
        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(
            "custom_role_assigned",
            user_id=str(user_id),
            role_id=str(custom_role_id) if custom_role_id else None,
        )
        self.activity.log(
            "ROLE_ASSIGNED",
            user_id=actor_id,
            entity_type="USER",
            entity_id=str(user_id),
            metadata={"custom_role_id": str(custom_role_id) if custom_role_id else None},
        )
        return user
