"""Sync controls: engine status, manual trigger, platform connectivity hook."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from ..core.errors import StoreError
from ..services.record_store import RecordStore, get_record_store
from ..services.sync_engine import TriggerSource

router = APIRouter(prefix="/sync", tags=["sync"])


class ConnectivityUpdate(BaseModel):
    online: bool


def get_sync_engine(request: Request):
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not running")
    return engine


def get_connectivity(request: Request):
    monitor = getattr(request.app.state, "connectivity", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Connectivity monitor not running")
    return monitor


@router.get("/status")
def sync_status(
    engine=Depends(get_sync_engine),
    connectivity=Depends(get_connectivity),
    store: RecordStore = Depends(get_record_store),
):
    try:
        pending: Optional[int] = store.count_pending()
    except StoreError:
        pending = None
    last = engine.last_result
    return {
        "state": engine.state.value,
        "online": connectivity.is_online,
        "pending": pending,
        "last_result": last.to_dict() if last else None,
    }


@router.post("/", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    wait: bool = Query(False, description="Run inline and return the result"),
    engine=Depends(get_sync_engine),
):
    """Request a sync now. Dropped if a run is already in progress."""
    if wait:
        result = await engine.sync_reports(TriggerSource.MANUAL)
        return {"accepted": not result.skipped, "result": result.to_dict()}
    return {"accepted": engine.trigger(TriggerSource.MANUAL)}


@router.post("/connectivity")
def update_connectivity(
    update: ConnectivityUpdate,
    connectivity=Depends(get_connectivity),
):
    """Network change pushed by the host platform."""
    connectivity.set_online(update.online)
    return {"online": connectivity.is_online}
