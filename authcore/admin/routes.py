"""
authcore - Admin API Routes

Custom role management:
- GET    /admin/roles                    (admin:read)
- GET    /admin/roles/{role_id}          (admin:read)
- POST   /admin/roles                    (admin:admin)
- PATCH  /admin/roles/{role_id}          (admin:admin)
- DELETE /admin/roles/{role_id}          (admin:admin)
- PUT    /admin/users/{user_id}/custom-role  (admin:admin)
"""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from authcore.admin.roles import RoleAdministration
from authcore.auth.dependencies import AuthenticatedRequest, get_current_user, get_db, require_permission
from authcore.auth.models import CustomRole
from authcore.auth.schemas import ErrorResponse
from authcore.gateway.rbac import Action, Module

router = APIRouter(prefix="/admin", tags=["admin"])


def get_role_admin(request: Request) -> RoleAdministration:
    return request.app.state.role_admin


# =============================================================================
# Request/Response Models
# =============================================================================

class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Dict[str, List[str]] = Field(default_factory=dict)


class RoleUpdateRequest(BaseModel):
    """Fields left out are unchanged."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[Dict[str, List[str]]] = None


class RoleResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    permissions: Dict[str, List[str]]
    is_system: bool
    user_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: CustomRole, user_count: Optional[int] = None) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=role.permissions or {},
            is_system=role.is_system,
            user_count=user_count,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleListResponse(BaseModel):
    roles: List[RoleResponse]
    total: int


class AssignRoleRequest(BaseModel):
    """custom_role_id null clears the assignment."""
    custom_role_id: Optional[UUID] = None


class AssignRoleResponse(BaseModel):
    user_id: UUID
    role: str
    custom_role_id: Optional[UUID] = None


# =============================================================================
# Role Endpoints
# =============================================================================

@router.get("/roles", response_model=RoleListResponse, summary="List custom roles")
@require_permission(Module.ADMIN, Action.READ)
async def list_roles(request: Request, user: AuthenticatedRequest = Depends(get_current_user)):
    db = get_db(request)
    try:
        roles = await get_role_admin(request).list_roles(db)
        return RoleListResponse(
            roles=[RoleResponse.from_role(role, count) for role, count in roles],
            total=len(roles),
        )
    finally:
        db.close()


@router.get(
    "/roles/{role_id}",
    response_model=RoleResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get a custom role",
)
@require_permission(Module.ADMIN, Action.READ)
async def get_role(
    request: Request,
    role_id: UUID,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    admin = get_role_admin(request)
    db = get_db(request)
    try:
        role = await admin.get_role(db, role_id)
        return RoleResponse.from_role(role, admin.count_assigned(db, role_id))
    finally:
        db.close()


@router.post(
    "/roles",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
    summary="Create a custom role",
)
@require_permission(Module.ADMIN, Action.ADMIN)
async def create_role(
    request: Request,
    body: RoleCreateRequest,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    db = get_db(request)
    try:
        role = await get_role_admin(request).create_role(
            db,
            name=body.name,
            description=body.description,
            permissions=body.permissions,
            actor_id=str(user.user_id),
        )
        return RoleResponse.from_role(role, 0)
    finally:
        db.close()


@router.patch(
    "/roles/{role_id}",
    response_model=RoleResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Update a custom role",
)
@require_permission(Module.ADMIN, Action.ADMIN)
async def update_role(
    request: Request,
    role_id: UUID,
    body: RoleUpdateRequest,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    db = get_db(request)
    try:
        role = await get_role_admin(request).update_role(
            db,
            role_id,
            name=body.name,
            description=body.description,
            permissions=body.permissions,
            actor_id=str(user.user_id),
        )
        return RoleResponse.from_role(role)
    finally:
        db.close()


@router.delete(
    "/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Delete a custom role",
)
@require_permission(Module.ADMIN, Action.ADMIN)
async def delete_role(
    request: Request,
    role_id: UUID,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    db = get_db(request)
    try:
        await get_role_admin(request).delete_role(db, role_id, actor_id=str(user.user_id))
    finally:
        db.close()


# =============================================================================
# User Endpoints
# =============================================================================

@router.put(
    "/users/{user_id}/custom-role",
    response_model=AssignRoleResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Assign or clear a user's custom role",
)
@require_permission(Module.ADMIN, Action.ADMIN)
async def assign_custom_role(
    request: Request,
    user_id: UUID,
    body: AssignRoleRequest,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    db = get_db(request)
    try:
        target = await get_role_admin(request).assign_role(
            db, user_id, body.custom_role_id, actor_id=str(user.user_id)
        )
        return AssignRoleResponse(
            user_id=target.id,
            role=target.role.value,
            custom_role_id=target.custom_role_id,
        )
    finally:
        db.close()
