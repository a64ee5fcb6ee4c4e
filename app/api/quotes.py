"""
Quotes API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Optional, List
import logging

from app.api.auth import get_current_actor
from app.config import settings
from app.schemas import (
    AssociationRequest, AssociationResult, ChangeLogEntry, ExpirySweepResult, QuoteCreate,
    QuoteItemRecord, QuoteItemsUpdate, QuoteRecord, QuoteStatusUpdate, QuoteUpdate,
    TransitionContext, WorkOrderRecord,
)
from app.services.association import AssociationManager
from app.services.dependency import (
    get_association_manager, get_quote_lifecycle, get_storage, to_http_exception,
)
from app.services.errors import InvalidTransition, LifecycleError, StorageError, ValidationError
from app.services.quote_lifecycle import QuoteLifecycle
from app.services.storage import Storage

router = APIRouter()
logger = logging.getLogger(__name__)


def _load_quote(storage: Storage, quote_id: int) -> QuoteRecord:
    quote = storage.get_quote(quote_id)
    if not quote:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quote not found")
    return quote


def _load_work_order(storage: Storage, work_order_id: int) -> WorkOrderRecord:
    work_order = storage.get_work_order(work_order_id)
    if not work_order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work order not found")
    return work_order


def _items(inputs) -> List[QuoteItemRecord]:
    return [QuoteItemRecord(**item.model_dump()) for item in inputs]


def _expected_pair(quote: QuoteRecord, work_order: WorkOrderRecord, request: AssociationRequest):
    """Apply the caller's view of the pair on top of what was just loaded"""
    if request.expected_quote_status is not None:
        quote = quote.model_copy(update={"status": request.expected_quote_status})
    if "expected_work_order_quote_id" in request.model_fields_set:
        work_order = work_order.model_copy(update={"quote_id": request.expected_work_order_quote_id})
    return quote, work_order


@router.post("/quotes/", response_model=QuoteRecord, status_code=status.HTTP_201_CREATED)
async def create_quote(
    data: QuoteCreate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: QuoteLifecycle = Depends(get_quote_lifecycle),
    associations: AssociationManager = Depends(get_association_manager),
):
    """Create a quote, optionally sending it and attaching an existing work order in the same action"""
    if not storage.client_name(data.client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    work_order = _load_work_order(storage, data.work_order_id) if data.work_order_id else None

    quote = QuoteRecord(
        **data.model_dump(exclude={"items", "send_to_client", "work_order_id", "tax_rate"}),
        tax_rate=data.tax_rate if data.tax_rate is not None else settings.default_tax_rate,
    )
    ctx = TransitionContext(actor=actor)
    try:
        result = lifecycle.create(quote, _items(data.items), ctx, send_to_client=data.send_to_client)
        with storage.transaction():
            [saved] = storage.apply(result)
            if work_order:
                saved = associations.convert(saved, work_order, ctx, on_creation=True).quote
    except LifecycleError as e:
        raise to_http_exception(e)

    logger.info(f"Quote {saved.quote_number} created by {actor}")
    return saved


@router.get("/quotes/", response_model=List[QuoteRecord])
async def list_quotes(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    return storage.list_quotes(status=status_filter, client_id=client_id, skip=skip, limit=limit)


@router.post("/quotes/expire-overdue", response_model=ExpirySweepResult)
async def expire_overdue_quotes(
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: QuoteLifecycle = Depends(get_quote_lifecycle),
):
    """Expire every draft or sent quote whose valid_until date has passed"""
    ctx = TransitionContext(actor=actor)
    expired = []
    skipped = []
    for quote in storage.list_overdue_quotes(ctx.now.date()):
        try:
            result = lifecycle.expire_if_due(quote, ctx)
            if result:
                storage.apply(result)
                expired.append(quote.quote_number)
        except (InvalidTransition, ValidationError) as e:
            logger.warning(f"Could not expire quote {quote.quote_number}: {e.detail}")
            skipped.append(quote.quote_number)
        except StorageError as e:
            logger.error(f"Expiry sweep stopped at quote {quote.quote_number} after expiring {len(expired)}: {e.detail}")
            raise to_http_exception(e)

    logger.info(f"Expiry sweep by {actor} expired {len(expired)} quote(s), skipped {len(skipped)}")
    return ExpirySweepResult(expired=expired, skipped=skipped)


@router.get("/quotes/{quote_id}", response_model=QuoteRecord)
async def get_quote(
    quote_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    return _load_quote(storage, quote_id)


@router.patch("/quotes/{quote_id}", response_model=QuoteRecord)
async def update_quote(
    quote_id: int,
    data: QuoteUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: QuoteLifecycle = Depends(get_quote_lifecycle),
):
    quote = _load_quote(storage, quote_id)
    try:
        result = lifecycle.edit_fields(quote, data.model_dump(exclude_unset=True), TransitionContext(actor=actor))
        [saved] = storage.apply(result)
    except LifecycleError as e:
        raise to_http_exception(e)
    return saved


@router.put("/quotes/{quote_id}/items", response_model=QuoteRecord)
async def replace_quote_items(
    quote_id: int,
    data: QuoteItemsUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: QuoteLifecycle = Depends(get_quote_lifecycle),
):
    quote = _load_quote(storage, quote_id)
    try:
        result = lifecycle.edit_items(quote, _items(data.items), TransitionContext(actor=actor))
        [saved] = storage.apply(result)
    except LifecycleError as e:
        raise to_http_exception(e)
    return saved


@router.post("/quotes/{quote_id}/status", response_model=QuoteRecord)
async def change_quote_status(
    quote_id: int,
    data: QuoteStatusUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    lifecycle: QuoteLifecycle = Depends(get_quote_lifecycle),
):
    quote = _load_quote(storage, quote_id)
    ctx = TransitionContext(
        actor=actor,
        notes=data.notes,
        override=data.override,
        items=_items(data.items) if data.items is not None else None,
    )
    try:
        result = lifecycle.transition(quote, data.status, ctx)
        [saved] = storage.apply(result)
    except LifecycleError as e:
        raise to_http_exception(e)
    return saved


@router.post("/quotes/{quote_id}/convert", response_model=AssociationResult, status_code=status.HTTP_201_CREATED)
async def convert_quote(
    quote_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    associations: AssociationManager = Depends(get_association_manager),
):
    """Create a new work order from an approved quote and link the two"""
    quote = _load_quote(storage, quote_id)
    try:
        return associations.convert(quote, None, TransitionContext(actor=actor))
    except LifecycleError as e:
        raise to_http_exception(e)


@router.post("/quotes/{quote_id}/associate", response_model=AssociationResult)
async def associate_quote(
    quote_id: int,
    data: AssociationRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    associations: AssociationManager = Depends(get_association_manager),
):
    """Link an approved quote to an existing work order that has no quote yet"""
    quote, work_order = _expected_pair(
        _load_quote(storage, quote_id), _load_work_order(storage, data.work_order_id), data
    )
    try:
        return associations.associate(quote, work_order, TransitionContext(actor=actor))
    except LifecycleError as e:
        raise to_http_exception(e)


@router.post("/quotes/{quote_id}/unlink", response_model=AssociationResult)
async def unlink_quote(
    quote_id: int,
    data: AssociationRequest,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    associations: AssociationManager = Depends(get_association_manager),
):
    quote, work_order = _expected_pair(
        _load_quote(storage, quote_id), _load_work_order(storage, data.work_order_id), data
    )
    try:
        return associations.unlink(quote, work_order, TransitionContext(actor=actor))
    except LifecycleError as e:
        raise to_http_exception(e)


@router.get("/quotes/{quote_id}/history", response_model=List[ChangeLogEntry])
async def get_quote_history(
    quote_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    _load_quote(storage, quote_id)
    return storage.list_change_log("quote", quote_id)
