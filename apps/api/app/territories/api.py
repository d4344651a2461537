from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.territories.schemas import (
    AssignEntityRequest,
    AutoAssignRequest,
    AutoAssignResult,
    ReconcileResult,
    RegionStats,
    TerritoryAssignmentRead,
    TerritoryCreate,
    TerritoryDetail,
    TerritoryListItem,
    TerritoryRead,
    TerritoryUpdate,
)
from app.territories.service import ActorUser, territory_service as service

router = APIRouter(prefix="/api/crm/territories", tags=["crm.territories"])

READ_PERMISSION = "crm.territories.read"
MANAGE_PERMISSION = "crm.territories.manage"
ASSIGN_PERMISSION = "crm.territories.assign"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=str(exc.detail),
        details=exc.detail,
        correlation_id=get_correlation_id() or request.headers.get("x-correlation-id"),
    )
    return JSONResponse(status_code=exc.status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=get_correlation_id() or request.headers.get("x-correlation-id"),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@router.get("/stats/by-region", response_model=list[RegionStats])
def get_stats_by_region(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RegionStats] | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        return service.get_stats_by_region(db)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_stats_failed")


@router.post("/auto-assign", response_model=AutoAssignResult)
def auto_assign(
    request: Request,
    dto: AutoAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoAssignResult | JSONResponse:
    try:
        require_permission(user, ASSIGN_PERMISSION)
        return service.auto_assign_all(db, user, dto.entity_type)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_auto_assign_failed")


@router.post("/reconcile", response_model=ReconcileResult)
def reconcile_counters(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReconcileResult | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        return service.reconcile_counters(db, user)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_reconcile_failed")


@router.get("/assignments/{entity_type}/{entity_id}", response_model=TerritoryAssignmentRead)
def get_assignment(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryAssignmentRead | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        assignment = service.find_assignment(db, entity_type, entity_id)
        if assignment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="assignment not found")
        return assignment
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_assignment_get_failed")


@router.delete("/assignments/{entity_type}/{entity_id}", response_model=None)
def unassign_entity(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, ASSIGN_PERMISSION)
        vacated_territory_id = service.unassign_entity(db, user, entity_type, entity_id)
        return {
            "status": "unassigned" if vacated_territory_id is not None else "not_assigned",
            "territory_id": str(vacated_territory_id) if vacated_territory_id is not None else None,
        }
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_unassign_failed")


@router.post("", response_model=TerritoryRead, status_code=status.HTTP_201_CREATED)
def create_territory(
    request: Request,
    dto: TerritoryCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryRead | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        return service.create_territory(db, user, dto)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_create_failed")


@router.get("", response_model=list[TerritoryListItem])
def list_territories(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TerritoryListItem] | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        return service.list_territories(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_list_failed")


@router.get("/{territory_id}", response_model=TerritoryDetail)
def get_territory(
    request: Request,
    territory_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryDetail | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        return service.get_territory(db, territory_id)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_get_failed")


@router.patch("/{territory_id}", response_model=TerritoryRead)
def patch_territory(
    request: Request,
    territory_id: uuid.UUID,
    dto: TerritoryUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryRead | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        return service.update_territory(db, user, territory_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_update_failed")


@router.delete("/{territory_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_territory(
    request: Request,
    territory_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, MANAGE_PERMISSION)
        service.delete_territory(db, user, territory_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_delete_failed")


@router.post("/{territory_id}/assignments", response_model=TerritoryAssignmentRead)
def assign_entity(
    request: Request,
    territory_id: uuid.UUID,
    dto: AssignEntityRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryAssignmentRead | JSONResponse:
    try:
        require_permission(user, ASSIGN_PERMISSION)
        return service.assign_entity(
            db,
            user,
            territory_id,
            dto.entity_type,
            dto.entity_id,
            auto_assigned=dto.auto_assigned,
        )
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_assign_failed")


@router.post("/{territory_id}/recompute", response_model=TerritoryRead)
def recompute_territory(
    request: Request,
    territory_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TerritoryRead | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        return service.recompute_territory(db, user, territory_id)
    except HTTPException as exc:
        return error_response(request, exc, "crm_territory_recompute_failed")
