import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from backend.app.api.errors import INVALID_REQUEST_RESPONSES
from backend.app.auth.dependencies import AuthContext, require_admin_user, require_trusted_origin
from backend.app.auth.rate_limiting import admin_rate_limit, limiter
from backend.app.auth.schemas import (
    AdminIdentity,
    CreateIdentityRequest,
    MessageResponse,
    RolePublic,
    UpdateIdentityRequest,
)
from backend.app.identity import (
    Identity,
    IdentityConflictError,
    IdentityNotFoundError,
    IdentityRepository,
    RoleNotFoundError,
    get_identity_repository,
)
from backend.app.security.passwords import get_password_hasher
from backend.app.security.rate_limiter import get_client_ip

logger = logging.getLogger("admin.identities")

router = APIRouter(prefix="/admin", tags=["admin"], responses=INVALID_REQUEST_RESPONSES)


def _audit(request: Request, auth: AuthContext, action: str, record_id: str, changes: dict) -> None:
    logger.info(
        "Audit event",
        extra={
            "json_fields": {
                "event": "audit",
                "action": action,
                "table": "users",
                "recordId": record_id,
                "userId": auth.user_id,
                "changes": changes,
                "ip": get_client_ip(request),
                "userAgent": request.headers.get("user-agent"),
            }
        },
    )


async def _admin_view(repository: IdentityRepository, identity: Identity) -> AdminIdentity:
    role = await repository.get_role(identity.role_id)
    return AdminIdentity(
        id=identity.id,
        username=identity.username,
        roleId=identity.role_id,
        roleName=role.name if role else "",
        roleLevel=role.level if role else 0,
        createdAt=identity.created_at.isoformat(),
    )


async def _hash(password: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, get_password_hasher().hash, password)


@router.get("/status")
async def admin_status(auth: AuthContext = Depends(require_admin_user)) -> dict[str, str]:
    """Simple admin health endpoint protected by role-level access control."""

    return {"status": "ok", "userId": auth.user_id, "role": auth.role}


@router.get("/roles", response_model=List[RolePublic], dependencies=[Depends(require_admin_user)])
async def list_roles() -> List[RolePublic]:
    roles = await get_identity_repository().list_roles()
    return [RolePublic(id=role.id, name=role.name, level=role.level) for role in roles]


@router.get("/users", response_model=List[AdminIdentity], dependencies=[Depends(require_admin_user)])
async def list_users() -> List[AdminIdentity]:
    repository = get_identity_repository()
    return [await _admin_view(repository, identity) for identity in await repository.list_identities()]


@router.post(
    "/users",
    response_model=AdminIdentity,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_trusted_origin)],
)
@limiter.limit(admin_rate_limit)
async def create_user(
    request: Request,
    response: Response,
    payload: CreateIdentityRequest,
    auth: AuthContext = Depends(require_admin_user),
) -> AdminIdentity:
    repository = get_identity_repository()
    try:
        identity = await repository.create(
            username=payload.username,
            password_hash=await _hash(payload.password),
            role_id=payload.roleId,
            created_by=auth.user_id,
        )
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown role") from exc
    except IdentityConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already exists") from exc

    _audit(request, auth, "CREATE", identity.id, {"username": identity.username, "roleId": identity.role_id})
    return await _admin_view(repository, identity)


@router.put(
    "/users/{user_id}",
    response_model=AdminIdentity,
    dependencies=[Depends(require_trusted_origin)],
)
@limiter.limit(admin_rate_limit)
async def update_user(
    request: Request,
    response: Response,
    user_id: str,
    payload: UpdateIdentityRequest,
    auth: AuthContext = Depends(require_admin_user),
) -> AdminIdentity:
    if payload.username is None and payload.password is None and payload.roleId is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")

    repository = get_identity_repository()
    password_hash = await _hash(payload.password) if payload.password is not None else None
    try:
        identity = await repository.update(
            user_id,
            username=payload.username,
            password_hash=password_hash,
            role_id=payload.roleId,
            updated_by=auth.user_id,
        )
    except IdentityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc
    except RoleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown role") from exc
    except IdentityConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already exists") from exc

    changes = {"username": payload.username, "roleId": payload.roleId, "passwordChanged": payload.password is not None}
    _audit(request, auth, "UPDATE", identity.id, changes)
    return await _admin_view(repository, identity)


@router.delete(
    "/users/{user_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_trusted_origin)],
)
@limiter.limit(admin_rate_limit)
async def delete_user(
    request: Request,
    response: Response,
    user_id: str,
    auth: AuthContext = Depends(require_admin_user),
) -> MessageResponse:
    if user_id == auth.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Administrators cannot delete themselves")

    try:
        identity = await get_identity_repository().soft_delete(user_id, deleted_by=auth.user_id)
    except IdentityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc

    _audit(request, auth, "DELETE", identity.id, {"username": identity.username})
    return MessageResponse(message="User deleted")
