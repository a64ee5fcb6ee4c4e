"""
Quote Lifecycle Service
Governs which status changes a quote may undergo and what each one writes.

    draft -> sent -> approved | rejected
    draft | sent -> expired          (only once valid_until has passed)
    approved -> converted            (only through the association manager)
    any non-draft except converted -> draft   (authorized override only)

Every transition first re-prices the quote and refuses to continue if the
stored totals disagree with its items. Nothing here touches storage: each
operation returns a TransitionResult for the storage collaborator to apply.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from app.config import settings
from app.schemas import (
    ChangeLogEntry, QuoteItemRecord, QuoteRecord, QuoteTotals, TransitionContext,
    TransitionResult, WorkOrderRecord,
)
from app.services.change_differ import (
    BooleanResolver, ChangeDiffer, DateResolver, FieldResolver, StatusResolver, render_value,
)
from app.services.errors import (
    InvalidTransition, MissingAssociation, NotEditable, StaleTotals, ValidationError,
)
from app.services.pricing import (
    compute_quote_totals, compute_totals, first_mismatch, priced_items, totals_match, totals_patch,
)

logger = logging.getLogger(__name__)


QUOTE_TRANSITIONS = {
    "draft": {"sent", "expired"},
    "sent": {"approved", "rejected", "expired"},
    "approved": set(),
    "rejected": set(),
    "expired": set(),
    "converted": set(),
}

EDITABLE_STATUSES = {"draft", "sent", "approved"}
EXPIRABLE_STATUSES = {"draft", "sent"}
CONVERTIBLE_STATUSES = {"approved"}
# A quote created straight from a work order is converted in the same action
CONVERTIBLE_ON_CREATION = {"draft", "sent"}

PRICING_INPUTS = {"apply_tax", "tax_rate", "discount_type", "discount_value"}

# Fields that only the lifecycle itself may write
PROTECTED_FIELDS = {
    "id", "quote_number", "status", "converted_to_wo_id", "converted_at", "items",
    "subtotal", "tax_amount", "discount_amount", "total",
    "created_by", "created_at", "updated_at",
}


def default_quote_resolvers() -> Dict[str, FieldResolver]:
    return {
        "status": StatusResolver(),
        "apply_tax": BooleanResolver(),
        "issue_date": DateResolver(),
        "valid_until": DateResolver(),
    }


class QuoteLifecycle:
    """State machine and edit rules for quotes"""

    def __init__(
        self,
        differ: Optional[ChangeDiffer] = None,
        resolvers: Optional[Dict[str, FieldResolver]] = None,
        material_names: Optional[Callable[[int], Optional[str]]] = None,
        validity_days: Optional[int] = None,
    ):
        self.differ = differ or ChangeDiffer()
        self.resolvers = default_quote_resolvers()
        if resolvers:
            self.resolvers.update(resolvers)
        self.material_names = material_names
        self.validity_days = settings.quote_validity_days if validity_days is None else validity_days

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def check_totals(self, quote: QuoteRecord) -> None:
        """Detect stale or tampered records before acting on them"""
        computed = compute_quote_totals(quote)
        if totals_match(quote.totals, computed):
            return
        field = first_mismatch(quote.totals, computed)
        if field:
            logger.warning(f"Quote {quote.quote_number} totals are stale on {field}")
            raise StaleTotals(quote.quote_number, field, getattr(quote, field), getattr(computed, field))

    @staticmethod
    def _note_negative_total(quote: QuoteRecord, totals: QuoteTotals) -> None:
        if totals.total < 0:
            logger.info(
                f"Quote {quote.quote_number or '(new)'}: discount {totals.discount_amount} exceeds subtotal "
                f"plus tax; total is negative ({totals.total})"
            )

    def _require_editable(self, quote: QuoteRecord) -> None:
        if quote.status not in EDITABLE_STATUSES:
            raise NotEditable(f"Quote {quote.quote_number}", quote.status)

    @staticmethod
    def is_overdue(quote: QuoteRecord, now: datetime) -> bool:
        return quote.valid_until is not None and quote.valid_until < now.date()

    def _status_entry(self, quote: QuoteRecord, old_status: str, new_status: str,
                      ctx: TransitionContext, notes: Optional[str] = None) -> ChangeLogEntry:
        entry = self.differ.diff(
            "quote", quote.id, {"status": old_status}, {"status": new_status},
            self.resolvers, actor=ctx.actor, now=ctx.now,
        )[0]
        return entry.model_copy(update={"notes": notes})

    def _entry(self, quote: QuoteRecord, action: str, ctx: TransitionContext, **values) -> ChangeLogEntry:
        return ChangeLogEntry(
            entity_type="quote",
            entity_id=quote.id,
            action=action,
            actor=ctx.actor,
            created_at=ctx.now,
            **values,
        )

    def item_name(self, item: QuoteItemRecord) -> str:
        name = None
        if item.item_type == "material" and item.material_id is not None and self.material_names:
            try:
                name = self.material_names(item.material_id)
            except Exception as e:
                logger.warning(f"Material name lookup failed for {item.material_id}: {e}")
        return name or item.description or "Unnamed item"

    def describe_item(self, item: QuoteItemRecord) -> str:
        return f"{self.item_name(item)} (Qty: {render_value(item.quantity)})"

    def _compare_items(self, old: QuoteItemRecord, new: QuoteItemRecord) -> List[Tuple[str, Optional[str], Optional[str]]]:
        if (old.quantity, old.unit_price, old.description, old.material_id) == \
                (new.quantity, new.unit_price, new.description, new.material_id):
            return []

        def detail(item):
            return (f"{self.item_name(item)} (Qty: {render_value(item.quantity)}, "
                    f"Unit price: {render_value(item.unit_price)})")
        return [("item_updated", detail(old), detail(new))]

    def _apply_items(self, quote: QuoteRecord, new_items: Sequence[QuoteItemRecord],
                     ctx: TransitionContext) -> Tuple[QuoteRecord, Dict[str, Any], List[ChangeLogEntry]]:
        known_ids = {item.id for item in quote.items if item.id is not None}
        foreign = [item.id for item in new_items if item.id is not None and item.id not in known_ids]
        if foreign:
            raise ValidationError(f"Items {foreign} do not belong to quote {quote.quote_number}")

        priced = priced_items(new_items)
        totals = compute_quote_totals(quote, priced)
        self._note_negative_total(quote, totals)
        entries = self.differ.diff_collection(
            "quote", quote.id, "items", quote.items, priced,
            key=lambda item: item.id,
            describe=self.describe_item,
            compare=self._compare_items,
            actor=ctx.actor,
            now=ctx.now,
        )
        patch = {"items": priced, **totals_patch(totals)}
        record = quote.model_copy(update={**patch, "updated_at": ctx.now})
        return record, patch, entries

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, quote: QuoteRecord, items: Sequence[QuoteItemRecord],
               ctx: Optional[TransitionContext] = None, send_to_client: bool = False) -> TransitionResult:
        """Price a new quote and produce its insert plus the 'created' log entry"""
        ctx = ctx or TransitionContext()
        if not quote.title or not quote.title.strip():
            raise ValidationError("Quote title is required")
        if not items:
            raise ValidationError("Add at least one item to the quote")

        priced = priced_items(items)
        totals = compute_totals(priced, quote.apply_tax, quote.tax_rate, quote.discount_type, quote.discount_value)
        self._note_negative_total(quote, totals)

        issue_date = quote.issue_date or ctx.now.date()
        valid_until = quote.valid_until or issue_date + timedelta(days=self.validity_days)
        if valid_until < issue_date:
            raise ValidationError("valid_until cannot be before the issue date")

        record = quote.model_copy(update={
            "status": "sent" if send_to_client else "draft",
            "issue_date": issue_date,
            "valid_until": valid_until,
            "items": priced,
            "converted_to_wo_id": None,
            "converted_at": None,
            "created_by": ctx.actor,
            "created_at": ctx.now,
            "updated_at": ctx.now,
            **totals_patch(totals),
        })
        entry = self._entry(record, "created", ctx, notes=f"Quote created with {len(priced)} item(s)")
        return TransitionResult(
            entity_type="quote",
            record=record,
            patch=record.model_dump(exclude={"id"}),
            log_entries=[entry],
            is_new=True,
        )

    def transition(self, quote: QuoteRecord, target_status: str,
                   ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """
        Move a quote to target_status.

        Raises MissingAssociation for 'converted' (use the association manager),
        InvalidTransition when the table does not allow the move, StaleTotals
        when the stored totals are out of date.
        """
        ctx = ctx or TransitionContext()
        current = quote.status

        if target_status == "converted":
            raise MissingAssociation(
                f"Quote {quote.quote_number} can only be converted by associating it with a work order"
            )
        if target_status not in QUOTE_TRANSITIONS:
            raise ValidationError(f"Unknown quote status '{target_status}'")

        self.check_totals(quote)

        if target_status == current:
            raise InvalidTransition(current, target_status, "quote is already in that status")
        if target_status == "draft":
            if current == "converted":
                raise InvalidTransition(current, target_status, "unlink the work order first")
            if not ctx.override:
                raise InvalidTransition(current, target_status, "resetting to draft requires an authorized override")
        elif target_status not in QUOTE_TRANSITIONS[current]:
            raise InvalidTransition(current, target_status)

        if target_status == "expired" and not self.is_overdue(quote, ctx.now):
            raise InvalidTransition(current, target_status, f"quote is valid until {quote.valid_until}")

        record, patch, item_entries = quote, {}, []
        if ctx.items is not None:
            self._require_editable(quote)
            record, patch, item_entries = self._apply_items(quote, ctx.items, ctx)

        patch["status"] = target_status
        record = record.model_copy(update={"status": target_status, "updated_at": ctx.now})
        log_entries = [self._status_entry(quote, current, target_status, ctx, ctx.notes)] + item_entries

        logger.info(f"Quote {quote.quote_number} status {current} -> {target_status} by {ctx.actor}")
        return TransitionResult(entity_type="quote", record=record, patch=patch, log_entries=log_entries)

    def expire_if_due(self, quote: QuoteRecord, ctx: Optional[TransitionContext] = None) -> Optional[TransitionResult]:
        """Expire a draft/sent quote whose valid_until has passed; None when nothing to do"""
        ctx = ctx or TransitionContext()
        if quote.status not in EXPIRABLE_STATUSES or not self.is_overdue(quote, ctx.now):
            return None
        if not ctx.notes:
            ctx = ctx.model_copy(update={"notes": f"Quote expired, valid until {quote.valid_until}"})
        return self.transition(quote, "expired", ctx)

    def edit_fields(self, quote: QuoteRecord, changes: Dict[str, Any],
                    ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """Update plain quote fields, re-pricing when a pricing input changes"""
        ctx = ctx or TransitionContext()
        self._require_editable(quote)

        protected = sorted(set(changes) & PROTECTED_FIELDS)
        if protected:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(protected)}")
        unknown = sorted(set(changes) - set(QuoteRecord.model_fields))
        if unknown:
            raise ValidationError(f"Unknown quote fields: {', '.join(unknown)}")

        changed = {field: value for field, value in changes.items() if getattr(quote, field) != value}
        if not changed:
            return TransitionResult(entity_type="quote", record=quote)

        candidate = quote.model_copy(update=changed)
        if candidate.issue_date and candidate.valid_until and candidate.valid_until < candidate.issue_date:
            raise ValidationError("valid_until cannot be before the issue date")
        if "title" in changed and not (candidate.title or "").strip():
            raise ValidationError("Quote title is required")

        patch = dict(changed)
        if PRICING_INPUTS & set(changed):
            totals = compute_quote_totals(candidate)
            self._note_negative_total(quote, totals)
            patch.update(totals_patch(totals))

        entries = self.differ.diff(
            "quote", quote.id,
            {field: getattr(quote, field) for field in changed}, changed,
            self.resolvers, actor=ctx.actor, now=ctx.now,
        )
        record = quote.model_copy(update={**patch, "updated_at": ctx.now})
        logger.info(f"Quote {quote.quote_number} updated ({', '.join(changed)}) by {ctx.actor}")
        return TransitionResult(entity_type="quote", record=record, patch=patch, log_entries=entries)

    def edit_items(self, quote: QuoteRecord, new_items: Sequence[QuoteItemRecord],
                   ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """Replace the item list; logs added, removed and updated items and re-prices"""
        ctx = ctx or TransitionContext()
        self._require_editable(quote)
        if not new_items:
            raise ValidationError("A quote needs at least one item")
        record, patch, entries = self._apply_items(quote, new_items, ctx)
        return TransitionResult(entity_type="quote", record=record, patch=patch, log_entries=entries)

    # ------------------------------------------------------------------
    # Association side (called by the association manager only)
    # ------------------------------------------------------------------

    def check_convertible(self, quote: QuoteRecord, on_creation: bool = False) -> None:
        allowed = CONVERTIBLE_STATUSES | (CONVERTIBLE_ON_CREATION if on_creation else set())
        if quote.status not in allowed:
            raise InvalidTransition(quote.status, "converted", "only approved quotes can be converted")
        self.check_totals(quote)

    def mark_converted(self, quote: QuoteRecord, work_order: WorkOrderRecord,
                       ctx: Optional[TransitionContext] = None, on_creation: bool = False) -> TransitionResult:
        ctx = ctx or TransitionContext()
        if work_order is None or work_order.id is None:
            raise MissingAssociation(f"Quote {quote.quote_number} has no work order to convert to")
        self.check_convertible(quote, on_creation)

        patch = {
            "status": "converted",
            "converted_to_wo_id": work_order.id,
            "converted_at": ctx.now,
        }
        record = quote.model_copy(update={**patch, "updated_at": ctx.now})
        log_entries = [
            self._entry(quote, "converted_to_wo", ctx,
                        field_name="converted_to_wo_id",
                        new_value=work_order.wo_number,
                        notes=f"Quote associated with work order {work_order.wo_number}"),
            self._status_entry(quote, quote.status, "converted", ctx, ctx.notes),
        ]
        logger.info(f"Quote {quote.quote_number} converted to work order {work_order.wo_number} by {ctx.actor}")
        return TransitionResult(entity_type="quote", record=record, patch=patch, log_entries=log_entries)

    def release_conversion(self, quote: QuoteRecord, work_order: WorkOrderRecord,
                           ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """
        Undo a conversion. The pre-conversion status is not tracked, so the
        quote always falls back to 'approved'.
        """
        ctx = ctx or TransitionContext()
        patch = {
            "status": "approved",
            "converted_to_wo_id": None,
            "converted_at": None,
        }
        record = quote.model_copy(update={**patch, "updated_at": ctx.now})
        log_entries = [
            self._entry(quote, "wo_unlinked", ctx,
                        field_name="converted_to_wo_id",
                        old_value=work_order.wo_number,
                        notes=f"Work Order {work_order.wo_number} unlinked from quote"),
        ]
        if quote.status != "approved":
            log_entries.append(self._status_entry(quote, quote.status, "approved", ctx, ctx.notes))

        logger.info(f"Quote {quote.quote_number} unlinked from work order {work_order.wo_number} by {ctx.actor}")
        return TransitionResult(entity_type="quote", record=record, patch=patch, log_entries=log_entries)
