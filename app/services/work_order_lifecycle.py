"""
Work Order Lifecycle Service
Status transitions, evidence rules and edit rules for work orders.

    draft -> scheduled -> in_progress -> completed
    in_progress <-> on_hold
    draft | scheduled | in_progress | on_hold -> cancelled   (reason required)
    completed | cancelled -> scheduled                        (reopen)

Completion needs the full evidence bundle: before and after photos, the
client's signature and the signer's name. Field, technician and material
edits are only accepted while the order is draft, scheduled or in progress.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from app.schemas import (
    ChangeLogEntry, QuoteRecord, TransitionContext, TransitionResult,
    WorkOrderMaterialRecord, WorkOrderRecord, WorkOrderTechnicianRecord,
)
from app.services.change_differ import (
    ChangeDiffer, DateResolver, FieldResolver, StatusResolver, render_value,
)
from app.services.errors import (
    IncompleteEvidence, InvalidTransition, NotEditable, ValidationError,
)
from app.services.pricing import ZERO, to_decimal

logger = logging.getLogger(__name__)


WORK_ORDER_TRANSITIONS = {
    "draft": {"scheduled", "cancelled"},
    "scheduled": {"in_progress", "cancelled"},
    "in_progress": {"completed", "on_hold", "cancelled"},
    "on_hold": {"in_progress", "cancelled"},
    "completed": {"scheduled"},
    "cancelled": {"scheduled"},
}

EDITABLE_STATUSES = {"draft", "scheduled", "in_progress"}
CANCELLABLE_STATUSES = {"draft", "scheduled", "in_progress", "on_hold"}
REOPENABLE_STATUSES = {"completed", "cancelled"}

EDITABLE_FIELDS = {
    "title", "description", "priority", "work_type",
    "client_id", "project_id", "client_location_id",
    "manual_address", "manual_city", "manual_state", "manual_zip_code", "manual_country",
    "poc_name", "poc_email", "poc_phone", "poc_title",
    "scheduled_date", "scheduled_start_time", "scheduled_end_time",
    "technician_notes",
}

EVIDENCE_FIELDS = (
    "photos_before", "photos_after", "technician_notes",
    "client_signature", "client_signature_name",
)

# What reopen(clear_evidence=True) resets
CLEARED_ON_REOPEN = {
    "photos_before": [],
    "photos_after": [],
    "technician_notes": None,
    "client_signature": None,
    "client_signature_name": None,
    "actual_start_date": None,
    "actual_end_date": None,
    "completed_by": None,
}


def default_work_order_resolvers() -> Dict[str, FieldResolver]:
    return {
        "status": StatusResolver(),
        "scheduled_date": DateResolver(),
    }


def missing_evidence(work_order: WorkOrderRecord) -> List[str]:
    """Names of the completion prerequisites the order does not satisfy"""
    missing = []
    if not work_order.photos_before:
        missing.append("photos_before")
    if not work_order.photos_after:
        missing.append("photos_after")
    if not (work_order.client_signature or "").strip():
        missing.append("client_signature")
    if not (work_order.client_signature_name or "").strip():
        missing.append("client_signature_name")
    return missing


class WorkOrderLifecycle:
    """State machine and edit rules for work orders"""

    def __init__(
        self,
        differ: Optional[ChangeDiffer] = None,
        resolvers: Optional[Dict[str, FieldResolver]] = None,
        technician_names: Optional[Callable[[int], Optional[str]]] = None,
        material_names: Optional[Callable[[int], Optional[str]]] = None,
    ):
        self.differ = differ or ChangeDiffer()
        self.resolvers = default_work_order_resolvers()
        if resolvers:
            self.resolvers.update(resolvers)
        self.technician_names = technician_names
        self.material_names = material_names

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_editable(self, work_order: WorkOrderRecord) -> None:
        if work_order.status not in EDITABLE_STATUSES:
            raise NotEditable(f"Work order {work_order.wo_number}", work_order.status)

    def _require_from(self, work_order: WorkOrderRecord, allowed: set, target: str) -> None:
        if work_order.status not in allowed or target not in WORK_ORDER_TRANSITIONS[work_order.status]:
            raise InvalidTransition(work_order.status, target)

    @staticmethod
    def _require_reason(reason: Optional[str], action: str) -> str:
        if reason is None or not reason.strip():
            raise ValidationError(f"A reason is required to {action} a work order")
        return reason.strip()

    def _entry(self, work_order: WorkOrderRecord, action: str, ctx: TransitionContext, **values) -> ChangeLogEntry:
        return ChangeLogEntry(
            entity_type="work_order",
            entity_id=work_order.id,
            action=action,
            actor=ctx.actor,
            created_at=ctx.now,
            **values,
        )

    def _transition(self, work_order: WorkOrderRecord, target: str, ctx: TransitionContext,
                    updates: Optional[Dict[str, Any]] = None, notes: Optional[str] = None) -> TransitionResult:
        patch = {"status": target, **(updates or {})}
        record = work_order.model_copy(update={**patch, "updated_at": ctx.now})
        entry = self.differ.diff(
            "work_order", work_order.id, {"status": work_order.status}, {"status": target},
            self.resolvers, actor=ctx.actor, now=ctx.now,
        )[0].model_copy(update={"notes": notes})

        logger.info(f"Work order {work_order.wo_number} status {work_order.status} -> {target} by {ctx.actor}")
        return TransitionResult(entity_type="work_order", record=record, patch=patch, log_entries=[entry])

    def _lookup(self, lookup, entity_id: int, label: str) -> str:
        if lookup:
            try:
                name = lookup(entity_id)
                if name:
                    return name
            except Exception as e:
                logger.warning(f"{label} name lookup failed for {entity_id}: {e}")
        return f"{label} #{entity_id}"

    def _technician_name(self, tech: WorkOrderTechnicianRecord) -> str:
        return tech.technician_name or self._lookup(self.technician_names, tech.technician_id, "Technician")

    def _material_name(self, material: WorkOrderMaterialRecord) -> str:
        return material.material_name or self._lookup(self.material_names, material.material_id, "Material")

    # ------------------------------------------------------------------
    # Creation and status transitions
    # ------------------------------------------------------------------

    def create(self, work_order: WorkOrderRecord, ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        if not work_order.title or not work_order.title.strip():
            raise ValidationError("Work order title is required")

        technicians = self._checked_technicians(work_order.technicians)
        materials = self._checked_materials(work_order.materials)
        record = work_order.model_copy(update={
            "status": "draft",
            "quote_id": None,
            "photos_before": [],
            "photos_after": [],
            "client_signature": None,
            "client_signature_name": None,
            "actual_start_date": None,
            "actual_end_date": None,
            "technicians": technicians,
            "materials": materials,
            "created_by": ctx.actor,
            "created_at": ctx.now,
            "updated_at": ctx.now,
        })
        entry = self._entry(
            record, "created", ctx,
            notes=f"Work order created with {len(technicians)} technician(s) and {len(materials)} material(s)",
        )
        return TransitionResult(
            entity_type="work_order",
            record=record,
            patch=record.model_dump(exclude={"id"}),
            log_entries=[entry],
            is_new=True,
        )

    def schedule(self, work_order: WorkOrderRecord, ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_from(work_order, {"draft"}, "scheduled")
        return self._transition(work_order, "scheduled", ctx, notes=ctx.notes)

    def start(self, work_order: WorkOrderRecord, ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_from(work_order, {"scheduled"}, "in_progress")
        return self._transition(work_order, "in_progress", ctx, {"actual_start_date": ctx.now}, notes=ctx.notes)

    def complete(self, work_order: WorkOrderRecord, evidence: Optional[Dict[str, Any]] = None,
                 ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """
        Complete an in-progress order. Evidence passed in is merged over what
        the order already holds, then every prerequisite is checked at once.
        """
        ctx = ctx or TransitionContext()
        self._require_from(work_order, {"in_progress"}, "completed")

        supplied = {field: value for field, value in (evidence or {}).items() if value is not None}
        unknown = sorted(set(supplied) - set(EVIDENCE_FIELDS))
        if unknown:
            raise ValidationError(f"Not evidence fields: {', '.join(unknown)}")

        candidate = work_order.model_copy(update=supplied)
        missing = missing_evidence(candidate)
        if missing:
            raise IncompleteEvidence(missing)

        updates = {**supplied, "actual_end_date": ctx.now, "completed_by": ctx.actor}
        return self._transition(work_order, "completed", ctx, updates, notes=ctx.notes)

    def cancel(self, work_order: WorkOrderRecord, reason: Optional[str],
               ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """Cancel with a mandatory reason, kept in the log entry. Evidence stays."""
        ctx = ctx or TransitionContext()
        reason = self._require_reason(reason, "cancel")
        self._require_from(work_order, CANCELLABLE_STATUSES, "cancelled")
        return self._transition(work_order, "cancelled", ctx, notes=reason)

    def put_on_hold(self, work_order: WorkOrderRecord, reason: Optional[str],
                    ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        reason = self._require_reason(reason, "put on hold")
        self._require_from(work_order, {"in_progress"}, "on_hold")
        return self._transition(work_order, "on_hold", ctx, notes=reason)

    def resume(self, work_order: WorkOrderRecord, ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_from(work_order, {"on_hold"}, "in_progress")
        return self._transition(work_order, "in_progress", ctx, notes=ctx.notes)

    def reopen(self, work_order: WorkOrderRecord, clear_evidence: bool = False,
               ctx: Optional[TransitionContext] = None) -> TransitionResult:
        """
        Send a completed or cancelled order back to 'scheduled'.
        With clear_evidence the photos, signature, notes and actual dates are
        reset; without it they are left exactly as they were.
        """
        ctx = ctx or TransitionContext()
        self._require_from(work_order, REOPENABLE_STATUSES, "scheduled")

        updates = dict(CLEARED_ON_REOPEN) if clear_evidence else {}
        notes = ("Work order reopened. Evidence was cleared." if clear_evidence
                 else "Work order reopened. Evidence was kept.")
        if ctx.notes:
            notes = f"{notes} {ctx.notes}"
        return self._transition(work_order, "scheduled", ctx, updates, notes=notes)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def edit_fields(self, work_order: WorkOrderRecord, changes: Dict[str, Any],
                    ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_editable(work_order)

        not_allowed = sorted(set(changes) - EDITABLE_FIELDS)
        if not_allowed:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(not_allowed)}")

        changed = {field: value for field, value in changes.items() if getattr(work_order, field) != value}
        if not changed:
            return TransitionResult(entity_type="work_order", record=work_order)
        if "title" in changed and not (changed["title"] or "").strip():
            raise ValidationError("Work order title is required")

        entries = self.differ.diff(
            "work_order", work_order.id,
            {field: getattr(work_order, field) for field in changed}, changed,
            self.resolvers, actor=ctx.actor, now=ctx.now,
        )
        record = work_order.model_copy(update={**changed, "updated_at": ctx.now})
        logger.info(f"Work order {work_order.wo_number} updated ({', '.join(changed)}) by {ctx.actor}")
        return TransitionResult(entity_type="work_order", record=record, patch=changed, log_entries=entries)

    def _checked_technicians(self, technicians: Sequence[WorkOrderTechnicianRecord]) -> List[WorkOrderTechnicianRecord]:
        seen = set()
        named = []
        for tech in technicians:
            if tech.technician_id in seen:
                raise ValidationError(f"Technician {tech.technician_id} is assigned twice")
            seen.add(tech.technician_id)
            named.append(tech.model_copy(update={"technician_name": self._technician_name(tech)}))
        return named

    def _checked_materials(self, materials: Sequence[WorkOrderMaterialRecord]) -> List[WorkOrderMaterialRecord]:
        seen = set()
        named = []
        for material in materials:
            if material.material_id in seen:
                raise ValidationError(f"Material {material.material_id} is listed twice")
            if to_decimal(material.quantity, "quantity") <= ZERO:
                raise ValidationError(f"Material {material.material_id}: quantity must be greater than zero")
            seen.add(material.material_id)
            named.append(material.model_copy(update={"material_name": self._material_name(material)}))
        return named

    def set_technicians(self, work_order: WorkOrderRecord, technicians: Sequence[WorkOrderTechnicianRecord],
                        ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_editable(work_order)
        new_list = self._checked_technicians(technicians)

        def describe(tech):
            return f"{self._technician_name(tech)} ({tech.role or 'No role specified'})"

        def compare(old, new) -> List[Tuple[str, Optional[str], Optional[str]]]:
            if (old.role or None) == (new.role or None):
                return []
            name = self._technician_name(new)
            return [("technician_role_changed", f"{name}: {old.role or 'No role'}", f"{name}: {new.role or 'No role'}")]

        entries = self.differ.diff_collection(
            "work_order", work_order.id, "technicians", work_order.technicians, new_list,
            key=lambda tech: tech.technician_id,
            describe=describe,
            compare=compare,
            added_action="technician_added",
            removed_action="technician_removed",
            actor=ctx.actor,
            now=ctx.now,
        )
        patch = {"technicians": new_list}
        record = work_order.model_copy(update={**patch, "updated_at": ctx.now})
        return TransitionResult(entity_type="work_order", record=record,
                                patch=patch if entries else {}, log_entries=entries)

    def set_materials(self, work_order: WorkOrderRecord, materials: Sequence[WorkOrderMaterialRecord],
                      ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._require_editable(work_order)
        new_list = self._checked_materials(materials)

        def describe(material):
            return f"{self._material_name(material)} (Quantity: {render_value(material.quantity)})"

        def compare(old, new) -> List[Tuple[str, Optional[str], Optional[str]]]:
            changes = []
            if to_decimal(old.quantity) != to_decimal(new.quantity):
                changes.append(("material_quantity_changed", describe(old), describe(new)))
            if (old.notes or None) != (new.notes or None):
                name = self._material_name(new)
                changes.append(("material_notes_changed",
                                f"{name}: {old.notes or '(empty)'}", f"{name}: {new.notes or '(empty)'}"))
            return changes

        entries = self.differ.diff_collection(
            "work_order", work_order.id, "materials", work_order.materials, new_list,
            key=lambda material: material.material_id,
            describe=describe,
            compare=compare,
            added_action="material_added",
            removed_action="material_removed",
            actor=ctx.actor,
            now=ctx.now,
        )
        patch = {"materials": new_list}
        record = work_order.model_copy(update={**patch, "updated_at": ctx.now})
        return TransitionResult(entity_type="work_order", record=record,
                                patch=patch if entries else {}, log_entries=entries)

    # ------------------------------------------------------------------
    # Association side (called by the association manager only)
    # ------------------------------------------------------------------

    def link_quote(self, work_order: WorkOrderRecord, quote: QuoteRecord,
                   ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        patch = {"quote_id": quote.id}
        record = work_order.model_copy(update={**patch, "updated_at": ctx.now})
        entry = self._entry(work_order, "quote_linked", ctx, field_name="quote_id",
                            new_value=quote.quote_number,
                            notes=f"Quote {quote.quote_number} associated with work order")
        return TransitionResult(entity_type="work_order", record=record, patch=patch, log_entries=[entry])

    def unlink_quote(self, work_order: WorkOrderRecord, quote: QuoteRecord,
                     ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        patch = {"quote_id": None}
        record = work_order.model_copy(update={**patch, "updated_at": ctx.now})
        entry = self._entry(work_order, "quote_unlinked", ctx, field_name="quote_id",
                            old_value=quote.quote_number,
                            notes=f"Quote {quote.quote_number} unlinked from work order")
        return TransitionResult(entity_type="work_order", record=record, patch=patch, log_entries=[entry])
