from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.engine import MigrationEngine
from app.core.errors import InvalidTransition
from app.core.status import StatusAggregator
from app.core.workflow import ItemStatus, RunStatus
from app.db.item_store import ItemStore
from app.schemas.migration import (
    StartRequest, RunStatusResponse, StatusResponse, ErrorsResponse, ErrorItem,
    LogEntry, RetryResponse, RegisterRequest, RegisterResponse,
)
from app.tasks.migration import run_photo_migration

router = APIRouter(prefix="/photo-migration")

@router.get("/status", response_model=StatusResponse)
def get_status(db: Session = Depends(get_db)):
    return StatusResponse(**StatusAggregator(db).snapshot().as_dict())

@router.get("/errors", response_model=ErrorsResponse)
def get_errors(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    store = ItemStore(db)
    items = store.errors(limit=limit)
    return ErrorsResponse(
        total=store.counts()[ItemStatus.ERROR.value],
        items=[ErrorItem.model_validate(i) for i in items],
    )

@router.get("/logs", response_model=List[LogEntry])
def get_logs(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return [LogEntry.model_validate(entry) for entry in ItemStore(db).recent_logs(limit=limit)]

@router.post("/start", response_model=RunStatusResponse)
def start_migration(req: StartRequest | None = None, db: Session = Depends(get_db)):
    overrides = req.model_dump(exclude_none=True) if req else {}
    run, dispatched = MigrationEngine(db).start(overrides)
    if dispatched:
        run_photo_migration.delay(run.run_token)
    return RunStatusResponse(status=RunStatus(run.status), dispatched=dispatched)

@router.post("/pause", response_model=RunStatusResponse)
def pause_migration(db: Session = Depends(get_db)):
    try:
        run = MigrationEngine(db).pause()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail={"error": "InvalidTransition", "message": str(e)})
    return RunStatusResponse(status=RunStatus(run.status))

@router.post("/retry-errors", response_model=RetryResponse)
def retry_errors(db: Session = Depends(get_db)):
    return RetryResponse(requeued=MigrationEngine(db).retry_errors())

@router.post("/items", response_model=RegisterResponse)
def register_items(req: RegisterRequest, db: Session = Depends(get_db)):
    registered = ItemStore(db).register(item.model_dump() for item in req.items)
    return RegisterResponse(registered=registered)
