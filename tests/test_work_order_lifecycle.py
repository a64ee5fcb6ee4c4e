from datetime import date
from decimal import Decimal

import pytest

from app.schemas import WorkOrderMaterialRecord, WorkOrderRecord, WorkOrderTechnicianRecord
from app.services.errors import IncompleteEvidence, InvalidTransition, NotEditable, ValidationError
from app.services.work_order_lifecycle import WorkOrderLifecycle, missing_evidence
from conftest import build_quote, NOW

TECHNICIANS = {1: "Dana Reyes", 2: "Sam Patel"}
MATERIALS = {1: "LED Panel 2x4", 2: "Copper Wire 12AWG"}


@pytest.fixture
def lifecycle():
    return WorkOrderLifecycle(technician_names=TECHNICIANS.get, material_names=MATERIALS.get)


@pytest.fixture
def in_progress(make_work_order):
    return make_work_order(status="in_progress", actual_start_date=NOW)


def test_create_starts_in_draft_with_named_crew(lifecycle, ctx):
    record = WorkOrderRecord(
        title="Replace lobby fixtures",
        client_id=1,
        technicians=[WorkOrderTechnicianRecord(technician_id=2, role="Helper")],
        materials=[WorkOrderMaterialRecord(material_id=2, quantity=Decimal("30"))],
    )

    result = lifecycle.create(record, ctx)

    assert result.is_new
    assert result.record.status == "draft"
    assert result.record.created_by == ctx.actor
    assert result.record.technicians[0].technician_name == "Sam Patel"
    assert result.record.materials[0].material_name == "Copper Wire 12AWG"
    [entry] = result.log_entries
    assert entry.action == "created"
    assert entry.notes == "Work order created with 1 technician(s) and 1 material(s)"


def test_create_requires_a_title(lifecycle, ctx):
    with pytest.raises(ValidationError):
        lifecycle.create(WorkOrderRecord(title=" ", client_id=1), ctx)


def test_schedule_then_start_records_actual_start(lifecycle, make_work_order, ctx):
    scheduled = lifecycle.schedule(make_work_order(), ctx).record
    assert scheduled.status == "scheduled"

    result = lifecycle.start(scheduled, ctx)
    assert result.record.status == "in_progress"
    assert result.patch["actual_start_date"] == NOW
    assert (result.log_entries[0].old_value, result.log_entries[0].new_value) == ("scheduled", "in_progress")


@pytest.mark.parametrize("status, operation", [
    ("draft", "start"),
    ("scheduled", "schedule"),
    ("completed", "start"),
    ("cancelled", "resume"),
    ("in_progress", "resume"),
])
def test_moves_outside_the_table_are_rejected(lifecycle, make_work_order, ctx, status, operation):
    with pytest.raises(InvalidTransition):
        getattr(lifecycle, operation)(make_work_order(status=status), ctx=ctx)


# ============================================================================
# Completion
# ============================================================================

def test_complete_lists_missing_evidence_and_leaves_the_order_alone(lifecycle, in_progress, evidence, ctx):
    del evidence["photos_after"]

    with pytest.raises(IncompleteEvidence) as exc:
        lifecycle.complete(in_progress, evidence, ctx)

    assert exc.value.missing == ["photos_after"]
    assert in_progress.status == "in_progress"
    assert in_progress.photos_before == []


def test_complete_without_any_evidence_lists_everything(lifecycle, in_progress, ctx):
    with pytest.raises(IncompleteEvidence) as exc:
        lifecycle.complete(in_progress, None, ctx)
    assert exc.value.missing == ["photos_before", "photos_after", "client_signature", "client_signature_name"]


def test_blank_signature_name_is_missing(make_work_order, evidence):
    evidence["client_signature_name"] = "  "
    assert missing_evidence(make_work_order(**evidence)) == ["client_signature_name"]


def test_complete_with_full_evidence(lifecycle, in_progress, evidence, ctx):
    result = lifecycle.complete(in_progress, evidence, ctx)

    record = result.record
    assert record.status == "completed"
    assert record.photos_after == evidence["photos_after"]
    assert record.client_signature_name == "Jordan Lee"
    assert record.actual_end_date == NOW
    assert record.completed_by == ctx.actor
    assert [e.action for e in result.log_entries] == ["status_changed"]


def test_complete_uses_evidence_already_on_the_order(lifecycle, make_work_order, evidence, ctx):
    order = make_work_order(status="in_progress", **evidence)
    assert lifecycle.complete(order, {}, ctx).record.status == "completed"


def test_complete_rejects_unknown_evidence_fields(lifecycle, in_progress, evidence, ctx):
    evidence["title"] = "Sneaky rename"
    with pytest.raises(ValidationError):
        lifecycle.complete(in_progress, evidence, ctx)


# ============================================================================
# Cancel, hold, reopen
# ============================================================================

@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancel_requires_a_reason(lifecycle, make_work_order, ctx, reason):
    with pytest.raises(ValidationError):
        lifecycle.cancel(make_work_order(status="scheduled"), reason, ctx)


def test_cancel_keeps_the_reason_and_the_evidence(lifecycle, make_work_order, evidence, ctx):
    order = make_work_order(status="in_progress", **evidence)
    result = lifecycle.cancel(order, "Client closed the site", ctx)

    assert result.record.status == "cancelled"
    assert result.log_entries[0].notes == "Client closed the site"
    assert result.record.photos_before == evidence["photos_before"]
    assert set(result.patch) == {"status"}


def test_completed_order_cannot_be_cancelled(lifecycle, make_work_order, ctx):
    with pytest.raises(InvalidTransition):
        lifecycle.cancel(make_work_order(status="completed"), "Too late", ctx)


def test_hold_and_resume(lifecycle, in_progress, ctx):
    held = lifecycle.put_on_hold(in_progress, "Waiting for parts", ctx)
    assert held.record.status == "on_hold"
    assert held.log_entries[0].notes == "Waiting for parts"

    with pytest.raises(ValidationError):
        lifecycle.put_on_hold(in_progress, None, ctx)

    resumed = lifecycle.resume(held.record, ctx)
    assert resumed.record.status == "in_progress"


def test_on_hold_order_can_be_cancelled_but_not_edited(lifecycle, make_work_order, ctx):
    held = make_work_order(status="on_hold")
    assert lifecycle.cancel(held, "Parts discontinued", ctx).record.status == "cancelled"
    with pytest.raises(NotEditable):
        lifecycle.edit_fields(held, {"title": "New"}, ctx)


def test_reopen_keeps_evidence_by_default(lifecycle, make_work_order, evidence, ctx):
    done = make_work_order(status="completed", completed_by="tech@example.com", actual_end_date=NOW, **evidence)
    result = lifecycle.reopen(done, ctx=ctx)

    assert result.record.status == "scheduled"
    assert result.record.photos_after == evidence["photos_after"]
    assert result.record.completed_by == "tech@example.com"
    assert result.log_entries[0].notes == "Work order reopened. Evidence was kept."


def test_reopen_can_clear_evidence(lifecycle, make_work_order, evidence, ctx):
    done = make_work_order(status="completed", completed_by="tech@example.com", actual_end_date=NOW, **evidence)
    result = lifecycle.reopen(done, clear_evidence=True, ctx=ctx)

    record = result.record
    assert record.photos_before == [] and record.photos_after == []
    assert record.client_signature is None
    assert record.technician_notes is None
    assert record.completed_by is None
    assert record.actual_end_date is None
    assert result.log_entries[0].notes == "Work order reopened. Evidence was cleared."


def test_only_finished_orders_reopen(lifecycle, in_progress, ctx):
    with pytest.raises(InvalidTransition):
        lifecycle.reopen(in_progress, ctx=ctx)


# ============================================================================
# Edits
# ============================================================================

def test_edit_fields_logs_dates_readably(lifecycle, make_work_order, ctx):
    order = make_work_order(status="scheduled", scheduled_date=date(2025, 3, 14))
    result = lifecycle.edit_fields(order, {"scheduled_date": date(2025, 3, 21), "poc_name": "Jordan Lee"}, ctx)

    by_field = {e.field_name: e for e in result.log_entries}
    assert (by_field["scheduled_date"].old_value, by_field["scheduled_date"].new_value) == (
        "Mar 14, 2025", "Mar 21, 2025",
    )
    assert by_field["poc_name"].old_value == "(empty)"
    assert result.record.poc_name == "Jordan Lee"


def test_edit_fields_refuses_status_and_evidence(lifecycle, make_work_order, ctx):
    for field in ("status", "photos_after", "quote_id"):
        with pytest.raises(ValidationError):
            lifecycle.edit_fields(make_work_order(), {field: None}, ctx)


@pytest.mark.parametrize("status", ["completed", "cancelled"])
def test_finished_orders_are_not_editable(lifecycle, make_work_order, ctx, status):
    order = make_work_order(status=status)
    with pytest.raises(NotEditable):
        lifecycle.edit_fields(order, {"title": "New"}, ctx)
    with pytest.raises(NotEditable):
        lifecycle.set_technicians(order, [], ctx)
    with pytest.raises(NotEditable):
        lifecycle.set_materials(order, [], ctx)


def test_technician_changes_are_logged_by_name(lifecycle, make_work_order, ctx):
    order = make_work_order()
    result = lifecycle.set_technicians(order, [
        WorkOrderTechnicianRecord(technician_id=1, role="Supervisor"),
        WorkOrderTechnicianRecord(technician_id=2),
    ], ctx)

    assert [(e.action, e.old_value, e.new_value) for e in result.log_entries] == [
        ("technician_role_changed", "Dana Reyes: Lead", "Dana Reyes: Supervisor"),
        ("technician_added", None, "Sam Patel (No role specified)"),
    ]
    assert [t.technician_name for t in result.record.technicians] == ["Dana Reyes", "Sam Patel"]


def test_removing_every_technician(lifecycle, make_work_order, ctx):
    result = lifecycle.set_technicians(make_work_order(), [], ctx)
    [entry] = result.log_entries
    assert (entry.action, entry.old_value) == ("technician_removed", "Dana Reyes (Lead)")


def test_duplicate_technician_is_rejected(lifecycle, make_work_order, ctx):
    with pytest.raises(ValidationError):
        lifecycle.set_technicians(make_work_order(), [
            WorkOrderTechnicianRecord(technician_id=2),
            WorkOrderTechnicianRecord(technician_id=2, role="Lead"),
        ], ctx)


def test_unchanged_crew_writes_nothing(lifecycle, make_work_order, ctx):
    order = make_work_order()
    result = lifecycle.set_technicians(order, order.technicians, ctx)
    assert result.patch == {}
    assert result.log_entries == []


def test_material_changes(lifecycle, make_work_order, ctx):
    order = make_work_order()
    result = lifecycle.set_materials(order, [
        WorkOrderMaterialRecord(material_id=1, quantity=Decimal("6"), notes="Two spares"),
        WorkOrderMaterialRecord(material_id=2, quantity=Decimal("25.5")),
    ], ctx)

    assert [(e.action, e.old_value, e.new_value) for e in result.log_entries] == [
        ("material_quantity_changed", "LED Panel 2x4 (Quantity: 4)", "LED Panel 2x4 (Quantity: 6)"),
        ("material_notes_changed", "LED Panel 2x4: (empty)", "LED Panel 2x4: Two spares"),
        ("material_added", None, "Copper Wire 12AWG (Quantity: 25.5)"),
    ]


@pytest.mark.parametrize("quantity", ["0", "-2"])
def test_material_quantity_must_be_positive(lifecycle, make_work_order, ctx, quantity):
    with pytest.raises(ValidationError):
        lifecycle.set_materials(make_work_order(), [
            WorkOrderMaterialRecord(material_id=2, quantity=Decimal(quantity)),
        ], ctx)


def test_unknown_technician_name_falls_back_to_id(make_work_order, ctx):
    lifecycle = WorkOrderLifecycle()
    result = lifecycle.set_technicians(make_work_order(technicians=[]), [
        WorkOrderTechnicianRecord(technician_id=42),
    ], ctx)
    assert result.log_entries[0].new_value == "Technician #42 (No role specified)"


# ============================================================================
# Association side
# ============================================================================

def test_link_and_unlink_quote(lifecycle, make_work_order, ctx):
    quote = build_quote(status="approved")
    linked = lifecycle.link_quote(make_work_order(), quote, ctx)

    assert linked.patch == {"quote_id": quote.id}
    assert linked.log_entries[0].action == "quote_linked"
    assert linked.log_entries[0].new_value == "QT-2025-00001"

    unlinked = lifecycle.unlink_quote(linked.record, quote, ctx)
    assert unlinked.record.quote_id is None
    assert unlinked.log_entries[0].old_value == "QT-2025-00001"
    assert unlinked.log_entries[0].notes == "Quote QT-2025-00001 unlinked from work order"
