from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..schemas.diagram import AllocateRequest, DiagramState, EquipmentUsage, GraphUpdate
from ..schemas.equipment import (
    AvailabilityReport,
    ConflictResolveRequest,
    EquipmentConflict,
    OperationResult,
    ValidateRequest,
)
from ..services.allocator import AllocationResult
from ..services.diagrams import JobNotFoundError
from ..services.ledger import LedgerError
from ..services.notifications import Toast
from ..services.saving import SaveStatus
from ..services.sessions import JobDiagramSession, SessionRegistry, get_registry
from ..services.sync import SyncReport


router = APIRouter(tags=["diagrams"])


async def _session(job_id: str, registry: SessionRegistry) -> JobDiagramSession:
    try:
        return await registry.get_or_open(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except LedgerError:
        raise HTTPException(status_code=503, detail="Diagram storage unavailable")


def _result(result: AllocationResult) -> OperationResult:
    if not result:
        detail = {"message": result.message}
        if result.conflict is not None:
            detail["conflict"] = result.conflict.model_dump(mode="json")
        raise HTTPException(status_code=409, detail=detail)
    return OperationResult(success=True, message=result.message, equipment_id=result.equipment_id)


# ---------- DIAGRAM ----------
@router.get("/jobs/{job_id}/diagram", response_model=DiagramState)
async def get_diagram(job_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return session.state()


@router.put("/jobs/{job_id}/diagram", response_model=DiagramState)
async def update_diagram(job_id: str, payload: GraphUpdate, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    await session.update_graph(payload.graph, reason=payload.reason, priority=payload.priority)
    return session.state()


@router.get("/jobs/{job_id}/diagram/usage", response_model=EquipmentUsage)
async def diagram_usage(job_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return await session.analyze()


@router.post("/jobs/{job_id}/diagram/validate", response_model=AvailabilityReport)
async def validate_diagram(job_id: str, payload: ValidateRequest, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return await session.validate(payload.target_location_id)


# ---------- ALLOCATION ----------
@router.post("/jobs/{job_id}/diagram/nodes/{node_id}/equipment", response_model=OperationResult)
async def allocate_to_node(job_id: str, node_id: str, payload: AllocateRequest, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return _result(await session.allocator.allocate_equipment_to_node(node_id, payload.equipment_id))


@router.delete("/jobs/{job_id}/diagram/nodes/{node_id}/equipment", response_model=OperationResult)
async def deallocate_from_node(job_id: str, node_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return _result(await session.allocator.deallocate_equipment_from_node(node_id))


@router.post("/jobs/{job_id}/diagram/edges/{edge_id}/equipment", response_model=OperationResult)
async def allocate_to_edge(job_id: str, edge_id: str, payload: AllocateRequest, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return _result(await session.allocator.allocate_cable_to_edge(edge_id, payload.equipment_id))


@router.delete("/jobs/{job_id}/diagram/edges/{edge_id}/equipment", response_model=OperationResult)
async def deallocate_from_edge(job_id: str, edge_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return _result(await session.allocator.deallocate_cable_from_edge(edge_id))


# ---------- SYNC ----------
@router.post("/jobs/{job_id}/diagram/sync", response_model=SyncReport)
async def sync_diagram(job_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return await session.sync.sync()


@router.get("/jobs/{job_id}/diagram/sync")
async def sync_status(job_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await _session(job_id, registry)
    return {
        "status": session.sync.status.value,
        "last_sync_time": session.sync.last_sync_time,
        "last_error": session.sync.last_error,
        "conflicts": registry.reconciler.for_job(job_id),
    }


# ---------- CONFLICTS ----------
@router.get("/conflicts", response_model=List[EquipmentConflict])
def list_conflicts(job_id: Optional[str] = None, registry: SessionRegistry = Depends(get_registry)):
    if job_id:
        return registry.reconciler.for_job(job_id)
    return registry.reconciler.conflicts


@router.post("/conflicts/{equipment_id}/resolve", response_model=OperationResult)
async def resolve_conflict(equipment_id: str, payload: ConflictResolveRequest, registry: SessionRegistry = Depends(get_registry)):
    if registry.reconciler.get(equipment_id) is None:
        raise HTTPException(status_code=404, detail="Conflict not found")
    return _result(await registry.reconciler.resolve(equipment_id, payload.resolution))


# ---------- NOTIFICATIONS / SAVES ----------
@router.get("/notifications/toasts", response_model=List[Toast])
def list_toasts(after_id: int = 0, job_id: Optional[str] = None, registry: SessionRegistry = Depends(get_registry)):
    return registry.notifier.recent(after_id=after_id, job_id=job_id)


@router.get("/saves/status", response_model=SaveStatus)
def save_status(registry: SessionRegistry = Depends(get_registry)):
    return registry.saver.get_status()
