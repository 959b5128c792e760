"""
Warehouse directory API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.core.rbac import Actor, require_internal
from app.db.session import get_db
from app.services import directory

router = APIRouter(prefix="/api/warehouses", tags=["Warehouses"])


class WarehouseCreate(BaseModel):
    name: str
    location: str
    owner_id: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    storage_type: Optional[str] = None
    total_space: Optional[float] = None
    available_space: Optional[float] = None
    price_per_sq_ft: Optional[float] = None


class WarehouseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: Optional[int] = None
    name: str
    location: str
    city: Optional[str] = None
    state: Optional[str] = None
    storage_type: Optional[str] = None
    total_space: Optional[float] = None
    available_space: Optional[float] = None
    price_per_sq_ft: Optional[float] = None
    is_active: bool
    created_at: Optional[datetime] = None


@router.get("", response_model=List[WarehouseResponse])
async def list_warehouses(
    city: Optional[str] = Query(None),
    storage_type: Optional[str] = Query(None),
    actor: Actor = Depends(require_internal),
    db: Session = Depends(get_db),
):
    """Active warehouses, for RFQ targeting."""
    return directory.list_warehouses(db, city=city, storage_type=storage_type)


@router.post("", response_model=WarehouseResponse, status_code=status.HTTP_201_CREATED)
async def create_warehouse(
    body: WarehouseCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return directory.create_warehouse(db, actor, **body.model_dump(exclude_none=True))
