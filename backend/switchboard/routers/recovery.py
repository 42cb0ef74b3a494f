"""
recovery.py – recovery supervisor endpoints.

GET  /api/recovery                   – attempt counter and guard state
POST /api/recovery/reset-counter     – re-arm the retry budget
POST /api/recovery/reset-application – wipe local state and dispose every provider
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import get_supervisor
from ..services.recovery import RecoverySupervisor

router = APIRouter(prefix="/api/recovery", tags=["recovery"])


@router.get("")
async def get_status(supervisor: RecoverySupervisor = Depends(get_supervisor)):
    return supervisor.get_status().to_dict()


@router.post("/reset-counter")
async def reset_counter(supervisor: RecoverySupervisor = Depends(get_supervisor)):
    supervisor.reset_counter()
    return supervisor.get_status().to_dict()


@router.post("/reset-application")
async def reset_application(supervisor: RecoverySupervisor = Depends(get_supervisor)):
    failed = await supervisor.reset_application()
    return {"reset": not failed, "failed": failed, **supervisor.get_status().to_dict()}
