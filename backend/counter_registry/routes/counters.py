from typing import List, Optional
from datetime import date
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from counter_registry.core.database import get_db
from counter_registry.core.deps import get_current_user, require_manager
from counter_registry.core.exceptions import CounterNotFoundError
from counter_registry.core.metrics import MetricCell
from counter_registry.models.user import User
from counter_registry.services import counter_registry_service


router = APIRouter()
logger = logging.getLogger(__name__)


class CounterCreate(BaseModel):
    counter_date: date = Field(alias="date")
    user_id: int = Field(alias="userId")
    product_id: Optional[int] = Field(None, alias="productId")
    notes: Optional[str] = None

    class Config:
        populate_by_name = True


class CounterUpdate(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[int] = Field(None, alias="userId")
    product_id: Optional[int] = Field(None, alias="productId")

    class Config:
        populate_by_name = True


class StaffUpdate(BaseModel):
    user_ids: List[int] = Field(default_factory=list, alias="userIds")

    class Config:
        populate_by_name = True


class MetricIn(BaseModel):
    id: Optional[int] = None
    channel_id: int = Field(alias="channelId")
    kind: str
    addon_id: Optional[int] = Field(None, alias="addonId")
    tally_type: str = Field(alias="tallyType")
    period: Optional[str] = None
    qty: float = 0

    class Config:
        populate_by_name = True


class MetricsUpsert(BaseModel):
    metrics: List[MetricIn] = Field(default_factory=list)


def _not_found(exc: CounterNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("")
def get_counter_for_date(
    counter_date: str = Query(..., alias="date", description="YYYY-MM-DD"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        return counter_registry_service.get_counter_by_date(db, counter_date)
    except CounterNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("")
def ensure_counter(
    payload: CounterCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    try:
        return counter_registry_service.find_or_create_counter(
            db,
            payload.counter_date,
            payload.user_id,
            user.id,
            product_id=payload.product_id,
            notes=payload.notes,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{counter_id}")
def get_counter(
    counter_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        return counter_registry_service.get_counter_by_id(db, counter_id)
    except CounterNotFoundError as e:
        raise _not_found(e)


@router.patch("/{counter_id}")
def update_counter(
    counter_id: int,
    payload: CounterUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    fields = payload.model_dump(exclude_unset=True)
    try:
        return counter_registry_service.update_counter_metadata(db, counter_id, user.id, **fields)
    except CounterNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{counter_id}/staff")
def update_counter_staff(
    counter_id: int,
    payload: StaffUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    try:
        return counter_registry_service.update_counter_staff(db, counter_id, payload.user_ids, user.id)
    except CounterNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{counter_id}/metrics")
def upsert_counter_metrics(
    counter_id: int,
    payload: MetricsUpsert,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        cells = [
            MetricCell(
                id=item.id,
                counter_id=counter_id,
                channel_id=item.channel_id,
                kind=item.kind,
                addon_id=item.addon_id,
                tally_type=item.tally_type,
                period=item.period,
                qty=item.qty,
            )
            for item in payload.metrics
        ]
        grid, summary = counter_registry_service.upsert_metrics(db, counter_id, cells, user.id)
    except CounterNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"metrics": [cell.to_dict() for cell in grid], "derivedSummary": summary}


@router.delete("/{counter_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_counter(
    counter_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    try:
        counter_registry_service.delete_counter(db, counter_id)
    except CounterNotFoundError as e:
        raise _not_found(e)
    logger.info("Counter %s deleted by user %s", counter_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
