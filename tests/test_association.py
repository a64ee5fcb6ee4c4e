import pytest
from sqlalchemy.exc import OperationalError

from app.models import ChangeLog
from app.schemas import QuoteRecord
from app.services.association import AssociationManager, work_order_from_quote
from app.services.errors import (
    AlreadyAssociated, AuditWriteError, InvalidTransition, MissingAssociation,
    StaleAssociation, StorageError, ValidationError,
)


@pytest.fixture
def associations(storage, quote_lifecycle, work_order_lifecycle):
    return AssociationManager(storage, quote_lifecycle, work_order_lifecycle)


def actions(storage, entity_type, entity_id):
    return [entry.action for entry in storage.list_change_log(entity_type, entity_id)]


def disk_failure(*args, **kwargs):
    raise OperationalError("UPDATE work_orders", {}, Exception("disk I/O error"))


# ============================================================================
# Convert
# ============================================================================

def test_convert_creates_and_links_a_work_order(associations, storage, saved_quote, ctx):
    quote = saved_quote("approved")

    result = associations.convert(quote, ctx=ctx)

    assert result.changed
    assert result.quote.status == "converted"
    assert result.quote.converted_at == ctx.now
    assert result.work_order.wo_number == "WO-2025-00001"
    assert result.quote.converted_to_wo_id == result.work_order.id
    assert result.work_order.quote_id == quote.id
    assert result.work_order.title == quote.title
    assert result.work_order.client_id == quote.client_id
    assert [e.action for e in result.log_entries] == [
        "created", "converted_to_wo", "status_changed", "quote_linked",
    ]

    assert actions(storage, "work_order", result.work_order.id) == ["created", "quote_linked"]
    assert {"converted_to_wo", "status_changed"} <= set(actions(storage, "quote", quote.id))


def test_convert_draft_quote_fails_without_creating_anything(associations, storage, saved_quote, ctx):
    quote = saved_quote("draft")

    with pytest.raises(InvalidTransition):
        associations.convert(quote, ctx=ctx)

    assert storage.list_work_orders() == []
    assert storage.get_quote(quote.id).status == "draft"


def test_quote_created_from_a_work_order_converts_from_draft(associations, saved_quote, ctx):
    result = associations.convert(saved_quote("draft"), ctx=ctx, on_creation=True)
    assert result.quote.status == "converted"


def test_convert_into_an_existing_work_order(associations, saved_quote, saved_work_order, ctx):
    quote = saved_quote("approved")
    work_order = saved_work_order()

    result = associations.convert(quote, work_order, ctx)

    assert result.work_order.id == work_order.id
    assert result.work_order.technicians[0].technician_name == "Dana Reyes"
    assert "created" not in [e.action for e in result.log_entries]


def test_converted_quote_cannot_be_converted_again(associations, saved_quote, ctx):
    first = associations.convert(saved_quote("approved"), ctx=ctx)
    with pytest.raises(AlreadyAssociated):
        associations.convert(first.quote, ctx=ctx)


def test_failed_link_rolls_back_the_new_work_order(associations, storage, saved_quote, ctx, monkeypatch):
    quote = saved_quote("approved")
    monkeypatch.setattr(storage, "_write_quote", disk_failure)

    with pytest.raises(StorageError):
        associations.convert(quote, ctx=ctx)

    assert storage.list_work_orders() == []


def test_work_order_from_quote_carries_client_and_project(make_quote):
    quote = make_quote(project_id=3, description="Swap 40 fixtures")
    record = work_order_from_quote(quote)
    assert (record.client_id, record.project_id, record.title) == (1, 3, quote.title)
    assert record.id is None


# ============================================================================
# Associate
# ============================================================================

def test_associate_links_both_sides(associations, storage, saved_quote, saved_work_order, ctx):
    quote = saved_quote("approved")
    work_order = saved_work_order()

    result = associations.associate(quote, work_order, ctx)

    assert storage.get_quote(quote.id).converted_to_wo_id == work_order.id
    assert storage.get_work_order(work_order.id).quote_id == quote.id
    assert result.work_order.quote_id == quote.id


def test_associate_rejects_a_different_client(associations, storage, saved_quote, saved_work_order, seed, ctx):
    quote = saved_quote("approved")
    work_order = saved_work_order(client_id=seed.other_client_id)

    with pytest.raises(ValidationError):
        associations.associate(quote, work_order, ctx)
    assert storage.get_quote(quote.id).status == "approved"


@pytest.mark.parametrize("status", ["sent", "rejected"])
def test_only_approved_quotes_associate(associations, saved_quote, saved_work_order, ctx, status):
    with pytest.raises(InvalidTransition):
        associations.associate(saved_quote(status), saved_work_order(), ctx)


def test_associate_needs_a_saved_work_order(associations, saved_quote, ctx):
    quote = saved_quote("approved")
    with pytest.raises(MissingAssociation):
        associations.associate(quote, work_order_from_quote(quote), ctx)


def test_either_side_already_taken(associations, storage, saved_quote, saved_work_order, ctx):
    first = associations.associate(saved_quote("approved"), saved_work_order(), ctx)
    other_quote = saved_quote("approved")
    other_work_order = saved_work_order(title="Parking lot poles")

    with pytest.raises(AlreadyAssociated):
        associations.associate(other_quote, storage.get_work_order(first.work_order.id), ctx)
    with pytest.raises(AlreadyAssociated):
        associations.associate(storage.get_quote(first.quote.id), other_work_order, ctx)


def test_stale_copy_is_refused(associations, storage, saved_quote, saved_work_order, ctx):
    quote = saved_quote("approved")
    work_order = saved_work_order()
    associations.associate(quote, work_order, ctx)

    # Still holding the pre-association copies
    with pytest.raises(StaleAssociation):
        associations.associate(quote, saved_work_order(title="Second visit"), ctx)


def test_missing_quote_is_stale(associations, saved_work_order, ctx):
    with pytest.raises(StaleAssociation):
        associations.associate(QuoteRecord(id=999, status="approved"), saved_work_order(), ctx)


def test_associating_a_linked_pair_again_is_a_no_op(associations, storage, saved_quote, saved_work_order, ctx):
    first = associations.associate(saved_quote("approved"), saved_work_order(), ctx)
    logged = len(storage.list_change_log("quote", first.quote.id))

    again = associations.associate(first.quote, first.work_order, ctx)

    assert not again.changed
    assert again.log_entries == []
    assert len(storage.list_change_log("quote", first.quote.id)) == logged


def test_failure_between_the_two_writes_leaves_both_unchanged(associations, storage, saved_quote,
                                                              saved_work_order, ctx, monkeypatch):
    quote = saved_quote("approved")
    work_order = saved_work_order()
    monkeypatch.setattr(storage, "_write_work_order", disk_failure)

    with pytest.raises(StorageError):
        associations.associate(quote, work_order, ctx)

    reread = storage.get_quote(quote.id)
    assert (reread.status, reread.converted_to_wo_id) == ("approved", None)
    assert storage.get_work_order(work_order.id).quote_id is None
    assert "converted_to_wo" not in actions(storage, "quote", quote.id)


def test_audit_write_failure_rolls_back_the_link(associations, storage, saved_quote,
                                                 saved_work_order, ctx, monkeypatch):
    quote = saved_quote("approved")
    work_order = saved_work_order()

    def log_row_without_action(**columns):
        columns["action"] = None
        return ChangeLog(**columns)

    monkeypatch.setattr("app.services.storage.ChangeLog", log_row_without_action)

    with pytest.raises(AuditWriteError):
        associations.associate(quote, work_order, ctx)

    monkeypatch.undo()
    assert storage.get_quote(quote.id).status == "approved"
    assert storage.get_work_order(work_order.id).quote_id is None


# ============================================================================
# Unlink
# ============================================================================

def test_unlink_returns_the_quote_to_approved(associations, storage, saved_quote, saved_work_order, ctx):
    linked = associations.associate(saved_quote("approved"), saved_work_order(), ctx)

    result = associations.unlink(linked.quote, linked.work_order, ctx)

    assert result.quote.status == "approved"
    assert result.quote.converted_to_wo_id is None
    assert result.quote.converted_at is None
    assert result.work_order.quote_id is None
    assert [e.action for e in result.log_entries] == ["wo_unlinked", "status_changed", "quote_unlinked"]
    assert "quote_unlinked" in actions(storage, "work_order", linked.work_order.id)


def test_unlinked_quote_can_be_associated_again(associations, saved_quote, saved_work_order, ctx):
    linked = associations.associate(saved_quote("approved"), saved_work_order(), ctx)
    released = associations.unlink(linked.quote, linked.work_order, ctx)

    again = associations.associate(released.quote, saved_work_order(title="Follow-up visit"), ctx)
    assert again.quote.status == "converted"


def test_unlink_requires_an_existing_link(associations, saved_quote, saved_work_order, ctx):
    with pytest.raises(MissingAssociation):
        associations.unlink(saved_quote("approved"), saved_work_order(), ctx)


def test_unlink_with_a_stale_copy(associations, saved_quote, saved_work_order, ctx):
    quote = saved_quote("approved")
    linked = associations.associate(quote, saved_work_order(), ctx)

    with pytest.raises(StaleAssociation):
        associations.unlink(quote, linked.work_order, ctx)
