"""
Work Orders API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Callable, Optional, List
import logging

from app.api.auth import get_current_actor
from app.schemas import (
    AssociationResult, ChangeLogEntry, QuoteAssociationRequest, QuoteRecord, ReasonRequest,
    ReopenRequest, TransitionContext, TransitionResult, WorkOrderCompleteRequest, WorkOrderCreate,
    WorkOrderMaterialRecord, WorkOrderMaterialsUpdate, WorkOrderRecord, WorkOrderTechnicianRecord,
    WorkOrderTechniciansUpdate, WorkOrderUpdate,
)
from app.services.association import AssociationManager
from app.services.dependency import (
    get_association_manager, get_storage, get_work_order_lifecycle, to_http_exception,
)
from app.services.errors import LifecycleError
from app.services.storage import Storage
from app.services.work_order_lifecycle import WorkOrderLifecycle

router = APIRouter()
logger = logging.getLogger(__name__)


def _load_work_order(storage: Storage, wo_id: int) -> WorkOrderRecord:
    work_order = storage.get_work_order(wo_id)
    if not work_order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work order not found")
    return work_order


def _load_quote(storage: Storage, quote_id: int) -> QuoteRecord:
    quote = storage.get_quote(quote_id)
    if not quote:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quote not found")
    return quote


def _technicians(storage: Storage, inputs) -> List[WorkOrderTechnicianRecord]:
    technicians = []
    for tech in inputs:
        name = storage.technician_name(tech.technician_id)
        if not name:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Technician {tech.technician_id} not found")
        technicians.append(WorkOrderTechnicianRecord(technician_id=tech.technician_id, technician_name=name, role=tech.role))
    return technicians


def _materials(storage: Storage, inputs) -> List[WorkOrderMaterialRecord]:
    materials = []
    for material in inputs:
        name = storage.material_name(material.material_id)
        if not name:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Material {material.material_id} not found")
        materials.append(WorkOrderMaterialRecord(
            material_id=material.material_id,
            material_name=name,
            quantity=material.quantity,
            notes=material.notes,
        ))
    return materials


def _save(storage: Storage, produce: Callable[[], TransitionResult]) -> WorkOrderRecord:
    """Run a lifecycle operation and persist its result, mapping failures to HTTP errors"""
    try:
        [saved] = storage.apply(produce())
    except LifecycleError as e:
        raise to_http_exception(e)
    return saved


def _expected_pair(quote: QuoteRecord, work_order: WorkOrderRecord, request: QuoteAssociationRequest):
    if request.expected_quote_status is not None:
        quote = quote.model_copy(update={"status": request.expected_quote_status})
    if "expected_work_order_quote_id" in request.model_fields_set:
        work_order = work_order.model_copy(update={"quote_id": request.expected_work_order_quote_id})
    return quote, work_order


@router.post("/work-orders/", response_model=WorkOrderRecord, status_code=status.HTTP_201_CREATED)
async def create_work_order(
    data: WorkOrderCreate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
    associations: AssociationManager = Depends(get_association_manager),
):
    """Create a new work order, converting an approved quote into it when quote_id is given"""
    if not storage.client_name(data.client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    record = WorkOrderRecord(
        **data.model_dump(exclude={"technicians", "materials", "quote_id"}),
        technicians=_technicians(storage, data.technicians),
        materials=_materials(storage, data.materials),
    )
    ctx = TransitionContext(actor=actor)

    if data.quote_id:
        quote = _load_quote(storage, data.quote_id)
        try:
            saved = associations.convert(quote, record, ctx).work_order
        except LifecycleError as e:
            raise to_http_exception(e)
    else:
        saved = _save(storage, lambda: lifecycle.create(record, ctx))

    logger.info(f"Work order {saved.wo_number} created by {actor}")
    return saved


@router.get("/work-orders/", response_model=List[WorkOrderRecord])
async def get_work_orders(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    client_id: Optional[int] = Query(None, description="Filter by client"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    return storage.list_work_orders(status=status_filter, client_id=client_id, skip=skip, limit=limit)


@router.get("/work-orders/{wo_id}", response_model=WorkOrderRecord)
async def get_work_order(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    return _load_work_order(storage, wo_id)


@router.patch("/work-orders/{wo_id}", response_model=WorkOrderRecord)
async def update_work_order(
    wo_id: int,
    data: WorkOrderUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    changes = data.model_dump(exclude_unset=True)
    return _save(storage, lambda: lifecycle.edit_fields(work_order, changes, TransitionContext(actor=actor)))


@router.put("/work-orders/{wo_id}/technicians", response_model=WorkOrderRecord)
async def set_work_order_technicians(
    wo_id: int,
    data: WorkOrderTechniciansUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    technicians = _technicians(storage, data.technicians)
    return _save(storage, lambda: lifecycle.set_technicians(work_order, technicians, TransitionContext(actor=actor)))


@router.put("/work-orders/{wo_id}/materials", response_model=WorkOrderRecord)
async def set_work_order_materials(
    wo_id: int,
    data: WorkOrderMaterialsUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    materials = _materials(storage, data.materials)
    return _save(storage, lambda: lifecycle.set_materials(work_order, materials, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/schedule", response_model=WorkOrderRecord)
async def schedule_work_order(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.schedule(work_order, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/start", response_model=WorkOrderRecord)
async def start_work_order(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.start(work_order, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/complete", response_model=WorkOrderRecord)
async def complete_work_order(
    wo_id: int,
    data: WorkOrderCompleteRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    """Complete the work order. Photos, signature and signer name must all be present."""
    work_order = _load_work_order(storage, wo_id)
    evidence = data.model_dump(exclude_none=True)
    return _save(storage, lambda: lifecycle.complete(work_order, evidence, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/cancel", response_model=WorkOrderRecord)
async def cancel_work_order(
    wo_id: int,
    data: ReasonRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.cancel(work_order, data.reason, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/hold", response_model=WorkOrderRecord)
async def hold_work_order(
    wo_id: int,
    data: ReasonRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.put_on_hold(work_order, data.reason, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/resume", response_model=WorkOrderRecord)
async def resume_work_order(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.resume(work_order, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/reopen", response_model=WorkOrderRecord)
async def reopen_work_order(
    wo_id: int,
    data: ReopenRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
):
    """Send a completed or cancelled work order back to scheduled, optionally clearing its evidence"""
    work_order = _load_work_order(storage, wo_id)
    return _save(storage, lambda: lifecycle.reopen(work_order, data.clear_evidence, TransitionContext(actor=actor)))


@router.post("/work-orders/{wo_id}/associate-quote", response_model=AssociationResult)
async def associate_work_order_quote(
    wo_id: int,
    data: QuoteAssociationRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    associations: AssociationManager = Depends(get_association_manager),
):
    quote, work_order = _expected_pair(_load_quote(storage, data.quote_id), _load_work_order(storage, wo_id), data)
    try:
        return associations.associate(quote, work_order, TransitionContext(actor=actor))
    except LifecycleError as e:
        raise to_http_exception(e)


@router.post("/work-orders/{wo_id}/unlink-quote", response_model=AssociationResult)
async def unlink_work_order_quote(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    associations: AssociationManager = Depends(get_association_manager),
):
    work_order = _load_work_order(storage, wo_id)
    if work_order.quote_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Work order has no associated quote")

    quote = _load_quote(storage, work_order.quote_id)
    try:
        return associations.unlink(quote, work_order, TransitionContext(actor=actor))
    except LifecycleError as e:
        raise to_http_exception(e)


@router.get("/work-orders/{wo_id}/history", response_model=List[ChangeLogEntry])
async def get_work_order_history(
    wo_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    _load_work_order(storage, wo_id)
    return storage.list_change_log("work_order", wo_id)
