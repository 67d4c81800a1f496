from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..api.dependencies import get_config, get_current_actor, get_db
from ..config import BillingConfig
from ..models.models import CollectionLogEntry, CollectionStage
from ..schemas.schemas import (
    CollectionLogRead,
    CollectionRunRead,
    CollectionStageCreate,
    CollectionStageRead,
    CollectionStageUpdate,
)
from ..services.collections import (
    delete_stage,
    list_collection_log,
    list_stages,
    process_collections,
    upsert_stage,
)

router = APIRouter()


@router.get("/stages", response_model=List[CollectionStageRead])
def get_stages(include_inactive: bool = True, db: Session = Depends(get_db)) -> List[CollectionStage]:
    return list_stages(db, include_inactive=include_inactive)


@router.post("/stages", response_model=CollectionStageRead, status_code=201)
def create_stage(
    payload: CollectionStageCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> CollectionStage:
    return upsert_stage(db, payload.model_dump(), actor=actor)


@router.put("/stages/{stage_id}", response_model=CollectionStageRead)
def update_stage(
    stage_id: int,
    payload: CollectionStageUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> CollectionStage:
    return upsert_stage(db, payload.model_dump(exclude_unset=True), stage_id=stage_id, actor=actor)


@router.delete("/stages/{stage_id}", status_code=204)
def remove_stage(
    stage_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> Response:
    delete_stage(db, stage_id, actor=actor)
    return Response(status_code=204)


@router.get("/log", response_model=List[CollectionLogRead])
def get_log(
    apartment_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[CollectionLogEntry]:
    return list_collection_log(db, apartment_id=apartment_id, limit=limit, offset=offset)


@router.post("/process", response_model=CollectionRunRead)
def run_collections(
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_config),
) -> CollectionRunRead:
    result = process_collections(db, config=config)
    return CollectionRunRead.model_validate(result, from_attributes=True)
