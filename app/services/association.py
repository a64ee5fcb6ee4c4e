"""
Association Manager
Keeps a quote and the work order it was converted to pointing at each other.

    quote.converted_to_wo_id == work_order.id
    work_order.quote_id == quote.id
    quote.status == "converted"

All three hold together or none does. Every operation first re-reads both
sides and refuses to act when storage no longer matches the caller's copy,
then writes both sides inside one storage transaction.
"""

from typing import Optional, Tuple
import logging

from app.schemas import AssociationResult, QuoteRecord, TransitionContext, WorkOrderRecord
from app.services.errors import AlreadyAssociated, MissingAssociation, StaleAssociation, ValidationError
from app.services.quote_lifecycle import QuoteLifecycle
from app.services.storage import Storage
from app.services.work_order_lifecycle import WorkOrderLifecycle

logger = logging.getLogger(__name__)


def work_order_from_quote(quote: QuoteRecord) -> WorkOrderRecord:
    """New draft work order carrying over the quote's client, project and wording"""
    return WorkOrderRecord(
        title=quote.title,
        description=quote.description,
        client_id=quote.client_id,
        project_id=quote.project_id,
    )


class AssociationManager:

    def __init__(self, storage: Storage, quotes: Optional[QuoteLifecycle] = None,
                 work_orders: Optional[WorkOrderLifecycle] = None):
        self.storage = storage
        self.quotes = quotes or QuoteLifecycle()
        self.work_orders = work_orders or WorkOrderLifecycle()

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _reread_quote(self, quote: QuoteRecord) -> QuoteRecord:
        current = self.storage.get_quote(quote.id) if quote.id is not None else None
        if current is None:
            raise StaleAssociation(f"Quote {quote.quote_number or quote.id} no longer exists")
        if (current.status, current.converted_to_wo_id) != (quote.status, quote.converted_to_wo_id):
            raise StaleAssociation(
                f"Quote {current.quote_number} changed since it was read "
                f"(status '{current.status}', work order {current.converted_to_wo_id}); reload and try again"
            )
        return current

    def _reread_work_order(self, work_order: WorkOrderRecord) -> WorkOrderRecord:
        current = self.storage.get_work_order(work_order.id) if work_order.id is not None else None
        if current is None:
            raise StaleAssociation(f"Work order {work_order.wo_number or work_order.id} no longer exists")
        if (current.status, current.quote_id) != (work_order.status, work_order.quote_id):
            raise StaleAssociation(
                f"Work order {current.wo_number} changed since it was read "
                f"(status '{current.status}', quote {current.quote_id}); reload and try again"
            )
        return current

    @staticmethod
    def _linked_state(quote: QuoteRecord, work_order: WorkOrderRecord) -> Tuple[bool, bool]:
        """(fully linked to each other, either side points somewhere else)"""
        quote_points_here = quote.converted_to_wo_id is not None and quote.converted_to_wo_id == work_order.id
        wo_points_here = work_order.quote_id is not None and work_order.quote_id == quote.id
        elsewhere = (
            (quote.converted_to_wo_id is not None and not quote_points_here)
            or (work_order.quote_id is not None and not wo_points_here)
        )
        return quote_points_here and wo_points_here, elsewhere

    def _check_free(self, quote: QuoteRecord, work_order: WorkOrderRecord) -> bool:
        """True when the pair is already linked to each other"""
        linked, elsewhere = self._linked_state(quote, work_order)
        if elsewhere:
            raise AlreadyAssociated(
                f"Quote {quote.quote_number} (work order {quote.converted_to_wo_id}) and work order "
                f"{work_order.wo_number} (quote {work_order.quote_id}) are not both free to associate"
            )
        if not linked and (quote.converted_to_wo_id is not None or work_order.quote_id is not None):
            raise AlreadyAssociated(
                f"Quote {quote.quote_number} and work order {work_order.wo_number} are only linked on one side; "
                f"unlink them first"
            )
        return linked

    @staticmethod
    def _check_same_client(quote: QuoteRecord, work_order: WorkOrderRecord) -> None:
        if quote.client_id and work_order.client_id and quote.client_id != work_order.client_id:
            raise ValidationError(
                f"Quote {quote.quote_number} and work order {work_order.wo_number} belong to different clients"
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _link(self, quote: QuoteRecord, work_order: WorkOrderRecord,
              ctx: TransitionContext, on_creation: bool) -> AssociationResult:
        quote_result = self.quotes.mark_converted(quote, work_order, ctx, on_creation)
        wo_result = self.work_orders.link_quote(work_order, quote, ctx)
        saved_quote, saved_wo = self.storage.apply(quote_result, wo_result)
        return AssociationResult(
            quote=saved_quote,
            work_order=saved_wo,
            log_entries=quote_result.log_entries + wo_result.log_entries,
        )

    def convert(self, quote: QuoteRecord, work_order: Optional[WorkOrderRecord] = None,
                ctx: Optional[TransitionContext] = None, on_creation: bool = False) -> AssociationResult:
        """
        Convert a quote into a work order. When the work order has no id yet
        (or none is given) it is created in the same transaction as the link.
        """
        ctx = ctx or TransitionContext()
        current_quote = self._reread_quote(quote)
        work_order = work_order or work_order_from_quote(current_quote)

        if work_order.id is not None:
            current_wo = self._reread_work_order(work_order)
            if self._check_free(current_quote, current_wo):
                return AssociationResult(quote=current_quote, work_order=current_wo, changed=False)
        elif current_quote.converted_to_wo_id is not None:
            raise AlreadyAssociated(
                f"Quote {current_quote.quote_number} is already converted to work order {current_quote.converted_to_wo_id}"
            )

        self._check_same_client(current_quote, work_order)
        self.quotes.check_convertible(current_quote, on_creation)

        with self.storage.transaction():
            created_entries = []
            if work_order.id is None:
                created = self.work_orders.create(work_order, ctx)
                created_entries = created.log_entries
                [current_wo] = self.storage.apply(created)
            result = self._link(current_quote, current_wo, ctx, on_creation)

        logger.info(f"Quote {result.quote.quote_number} converted to work order {result.work_order.wo_number}")
        return result.model_copy(update={"log_entries": created_entries + result.log_entries})

    def associate(self, quote: QuoteRecord, work_order: WorkOrderRecord,
                  ctx: Optional[TransitionContext] = None, on_creation: bool = False) -> AssociationResult:
        """Link two existing entities. Idempotent when they are already linked to each other."""
        ctx = ctx or TransitionContext()
        if work_order.id is None:
            raise MissingAssociation("Associating needs an existing work order; use convert to create one")

        current_quote = self._reread_quote(quote)
        current_wo = self._reread_work_order(work_order)
        if self._check_free(current_quote, current_wo):
            return AssociationResult(quote=current_quote, work_order=current_wo, changed=False)
        self._check_same_client(current_quote, current_wo)
        self.quotes.check_convertible(current_quote, on_creation)

        with self.storage.transaction():
            result = self._link(current_quote, current_wo, ctx, on_creation)

        logger.info(f"Quote {result.quote.quote_number} associated with work order {result.work_order.wo_number}")
        return result

    def unlink(self, quote: QuoteRecord, work_order: WorkOrderRecord,
               ctx: Optional[TransitionContext] = None) -> AssociationResult:
        """
        Break the link. The quote always goes back to 'approved'; a pair linked
        on one side only is repaired the same way.
        """
        ctx = ctx or TransitionContext()
        current_quote = self._reread_quote(quote)
        current_wo = self._reread_work_order(work_order)

        _, elsewhere = self._linked_state(current_quote, current_wo)
        points_at_each_other = (current_quote.converted_to_wo_id == current_wo.id
                                or current_wo.quote_id == current_quote.id)
        if elsewhere or not points_at_each_other:
            raise MissingAssociation(
                f"Quote {current_quote.quote_number} is not associated with work order {current_wo.wo_number}"
            )

        quote_result = self.quotes.release_conversion(current_quote, current_wo, ctx)
        wo_result = self.work_orders.unlink_quote(current_wo, current_quote, ctx)
        with self.storage.transaction():
            saved_quote, saved_wo = self.storage.apply(quote_result, wo_result)

        logger.info(f"Quote {saved_quote.quote_number} unlinked from work order {saved_wo.wo_number}")
        return AssociationResult(
            quote=saved_quote,
            work_order=saved_wo,
            log_entries=quote_result.log_entries + wo_result.log_entries,
        )
