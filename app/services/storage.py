"""
Storage Service
SQLAlchemy-backed collaborator for the lifecycle services.

- Reads quotes, work orders and projects as Pydantic records
- Applies TransitionResults (entity patch + change log entries) atomically:
  every result passed to one apply() call, and every apply() made inside an
  open transaction(), is committed together or not at all
- Assigns QT-/WO- numbers on insert and back-fills entity ids on log entries
- Resolves ids to display names for the change log
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.models import (
    ChangeLog, Client, ClientLocation, Material, Project, Quote, QuoteItem,
    Technician, WorkOrder, WorkOrderMaterial, WorkOrderTechnician,
)
from app.schemas import (
    ChangeLogEntry, ProjectRecord, QuoteItemRecord, QuoteRecord, TransitionResult,
    WorkOrderMaterialRecord, WorkOrderRecord, WorkOrderTechnicianRecord,
)
from app.services.change_differ import FieldResolver, LookupResolver
from app.services.errors import AuditWriteError, StorageError

logger = logging.getLogger(__name__)

Record = Union[QuoteRecord, WorkOrderRecord, ProjectRecord]


def _columns(instance) -> Dict[str, Any]:
    return {column.name: getattr(instance, column.name) for column in instance.__table__.columns}


def generate_number(db: Session, model, column, prefix: str, year: Optional[int] = None) -> str:
    """Next PREFIX-YYYY-NNNNN number for the given year"""
    year = year or datetime.utcnow().year
    stem = f"{prefix}-{year}-"

    last = db.query(model).filter(column.like(f"{stem}%")).order_by(column.desc()).first()
    if last:
        try:
            new_num = int(getattr(last, column.key).split("-")[-1]) + 1
        except ValueError:
            new_num = 1
    else:
        new_num = 1

    return f"{stem}{new_num:05d}"


class Storage:
    """Unit of work over one SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """
        Group several apply() calls into one commit. Nested blocks join the
        outermost one; only the outermost block commits or rolls back.
        """
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self
            if outermost:
                self.db.commit()
        except SQLAlchemyError as e:
            if outermost:
                self.db.rollback()
            logger.error(f"Storage write failed, rolled back: {e}")
            raise StorageError(f"Could not save changes: {e}") from e
        except Exception:
            if outermost:
                self.db.rollback()
            raise
        finally:
            self._depth -= 1

    def apply(self, *results: TransitionResult) -> List[Record]:
        """Write each result's patch and log entries; returns the persisted records"""
        persisted = []
        with self.transaction():
            for result in results:
                persisted.append(self._apply_one(result))
        return persisted

    def _apply_one(self, result: TransitionResult) -> Record:
        if not result.is_new and not result.patch and not result.log_entries:
            return result.record

        writers = {
            "quote": self._write_quote,
            "work_order": self._write_work_order,
            "project": self._write_project,
        }
        try:
            instance = writers[result.entity_type](result)
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write {result.entity_type} {result.record.id}: {e}")
            raise StorageError(f"Could not save {result.entity_type}: {e}") from e

        self._append_log(result.entity_type, instance.id, result.log_entries)
        return self._to_record(result.entity_type, instance)

    def _append_log(self, entity_type: str, entity_id: int, entries: List[ChangeLogEntry]) -> None:
        try:
            for entry in entries:
                self.db.add(ChangeLog(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id if entry.entity_id is not None else entity_id,
                    action=entry.action,
                    field_name=entry.field_name,
                    old_value=entry.old_value,
                    new_value=entry.new_value,
                    notes=entry.notes,
                    actor=entry.actor,
                    created_at=entry.created_at,
                ))
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Change log append failed for {entity_type} {entity_id}: {e}")
            raise AuditWriteError(f"Could not record the change history for {entity_type} {entity_id}: {e}") from e

    def _load_for_write(self, model, entity_id: Optional[int], label: str):
        instance = self.db.get(model, entity_id) if entity_id is not None else None
        if instance is None:
            raise StorageError(f"{label} {entity_id} no longer exists")
        return instance

    @staticmethod
    def _set_columns(instance, patch: Dict[str, Any], skip=()) -> None:
        columns = {column.name for column in instance.__table__.columns}
        for field, value in patch.items():
            if field in columns and field not in skip:
                setattr(instance, field, value)

    # ------------------------------------------------------------------
    # Entity writers
    # ------------------------------------------------------------------

    def _write_quote(self, result: TransitionResult) -> Quote:
        patch = result.patch
        if result.is_new:
            quote = Quote()
            self._set_columns(quote, patch, skip={"id"})
            if not quote.quote_number:
                year = (result.record.created_at or datetime.utcnow()).year
                quote.quote_number = generate_number(self.db, Quote, Quote.quote_number, settings.quote_number_prefix, year)
            self.db.add(quote)
        else:
            quote = self._load_for_write(Quote, result.record.id, "Quote")
            self._set_columns(quote, patch, skip={"id", "quote_number"})

        if "items" in patch:
            self._sync_quote_items(quote, patch["items"])
        return quote

    def _sync_quote_items(self, quote: Quote, items: List[Any]) -> None:
        existing = {item.id: item for item in quote.items}
        synced = []
        for data in items:
            record = QuoteItemRecord.model_validate(data)
            item = existing.get(record.id) if record.id is not None else None
            if item is None:
                item = QuoteItem()
            item.item_type = record.item_type
            item.material_id = record.material_id
            item.description = record.description
            item.quantity = record.quantity
            item.unit_price = record.unit_price
            item.subtotal = record.subtotal if record.subtotal is not None else record.quantity * record.unit_price
            item.notes = record.notes
            item.display_order = record.display_order or 0
            synced.append(item)
        quote.items = synced

    def _write_work_order(self, result: TransitionResult) -> WorkOrder:
        patch = result.patch
        if result.is_new:
            work_order = WorkOrder()
            self._set_columns(work_order, patch, skip={"id"})
            if not work_order.wo_number:
                year = (result.record.created_at or datetime.utcnow()).year
                work_order.wo_number = generate_number(self.db, WorkOrder, WorkOrder.wo_number, settings.wo_number_prefix, year)
            self.db.add(work_order)
        else:
            work_order = self._load_for_write(WorkOrder, result.record.id, "Work order")
            self._set_columns(work_order, patch, skip={"id", "wo_number"})

        if "technicians" in patch:
            existing = {a.technician_id: a for a in work_order.technician_assignments}
            assignments = []
            for data in patch["technicians"]:
                tech = WorkOrderTechnicianRecord.model_validate(data)
                assignment = existing.get(tech.technician_id) or WorkOrderTechnician(technician_id=tech.technician_id)
                assignment.role = tech.role
                assignments.append(assignment)
            work_order.technician_assignments = assignments

        if "materials" in patch:
            actor = result.log_entries[0].actor if result.log_entries else None
            existing = {m.material_id: m for m in work_order.material_lines}
            lines = []
            for data in patch["materials"]:
                material = WorkOrderMaterialRecord.model_validate(data)
                line = existing.get(material.material_id)
                if line is None:
                    line = WorkOrderMaterial(material_id=material.material_id, added_by=actor)
                line.quantity = material.quantity
                line.notes = material.notes
                lines.append(line)
            work_order.material_lines = lines
        return work_order

    def _write_project(self, result: TransitionResult) -> Project:
        if result.is_new:
            project = Project()
            self._set_columns(project, result.patch, skip={"id"})
            self.db.add(project)
        else:
            project = self._load_for_write(Project, result.record.id, "Project")
            self._set_columns(project, result.patch, skip={"id"})
        return project

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _to_record(self, entity_type: str, instance) -> Record:
        if entity_type == "quote":
            return self._quote_record(instance)
        if entity_type == "work_order":
            return self._work_order_record(instance)
        return ProjectRecord.model_validate(instance)

    def _quote_record(self, quote: Quote) -> QuoteRecord:
        data = _columns(quote)
        data["items"] = [QuoteItemRecord.model_validate(item)
                         for item in sorted(quote.items, key=lambda i: (i.display_order or 0, i.id or 0))]
        return QuoteRecord.model_validate(data)

    def _work_order_record(self, work_order: WorkOrder) -> WorkOrderRecord:
        data = _columns(work_order)
        data["photos_before"] = data["photos_before"] or []
        data["photos_after"] = data["photos_after"] or []
        data["technicians"] = [
            WorkOrderTechnicianRecord(
                technician_id=a.technician_id,
                technician_name=self.technician_name(a.technician_id),
                role=a.role,
            )
            for a in work_order.technician_assignments
        ]
        data["materials"] = [
            WorkOrderMaterialRecord(
                material_id=m.material_id,
                material_name=self.material_name(m.material_id),
                quantity=m.quantity,
                notes=m.notes,
            )
            for m in work_order.material_lines
        ]
        return WorkOrderRecord.model_validate(data)

    def get_quote(self, quote_id: int) -> Optional[QuoteRecord]:
        quote = self.db.get(Quote, quote_id)
        return self._quote_record(quote) if quote else None

    def get_work_order(self, work_order_id: int) -> Optional[WorkOrderRecord]:
        work_order = self.db.get(WorkOrder, work_order_id)
        return self._work_order_record(work_order) if work_order else None

    def get_project(self, project_id: int) -> Optional[ProjectRecord]:
        project = self.db.get(Project, project_id)
        return ProjectRecord.model_validate(project) if project else None

    def list_quotes(self, status: Optional[str] = None, client_id: Optional[int] = None,
                    skip: int = 0, limit: int = 100) -> List[QuoteRecord]:
        query = self.db.query(Quote)
        if status:
            query = query.filter(Quote.status == status)
        if client_id:
            query = query.filter(Quote.client_id == client_id)
        return [self._quote_record(q) for q in query.order_by(Quote.id.desc()).offset(skip).limit(limit).all()]

    def list_overdue_quotes(self, today) -> List[QuoteRecord]:
        quotes = self.db.query(Quote).filter(
            Quote.status.in_(["draft", "sent"]),
            Quote.valid_until < today,
        ).order_by(Quote.id).all()
        return [self._quote_record(q) for q in quotes]

    def list_work_orders(self, status: Optional[str] = None, client_id: Optional[int] = None,
                         skip: int = 0, limit: int = 100) -> List[WorkOrderRecord]:
        query = self.db.query(WorkOrder)
        if status:
            query = query.filter(WorkOrder.status == status)
        if client_id:
            query = query.filter(WorkOrder.client_id == client_id)
        return [self._work_order_record(w) for w in query.order_by(WorkOrder.id.desc()).offset(skip).limit(limit).all()]

    def list_change_log(self, entity_type: str, entity_id: int) -> List[ChangeLogEntry]:
        rows = self.db.query(ChangeLog).filter(
            ChangeLog.entity_type == entity_type,
            ChangeLog.entity_id == entity_id,
        ).order_by(ChangeLog.created_at, ChangeLog.id).all()
        return [ChangeLogEntry.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Display names for the change log
    # ------------------------------------------------------------------

    def _name(self, model, entity_id, attribute: str = "name") -> Optional[str]:
        if entity_id is None:
            return None
        instance = self.db.get(model, entity_id)
        return getattr(instance, attribute) if instance else None

    def client_name(self, client_id: int) -> Optional[str]:
        return self._name(Client, client_id)

    def location_name(self, location_id: int) -> Optional[str]:
        return self._name(ClientLocation, location_id, "location_name")

    def project_name(self, project_id: int) -> Optional[str]:
        return self._name(Project, project_id)

    def material_name(self, material_id: int) -> Optional[str]:
        return self._name(Material, material_id)

    def technician_name(self, technician_id: int) -> Optional[str]:
        return self._name(Technician, technician_id)

    def quote_number(self, quote_id: int) -> Optional[str]:
        return self._name(Quote, quote_id, "quote_number")

    def quote_resolvers(self) -> Dict[str, FieldResolver]:
        return {
            "client_id": LookupResolver(self.client_name),
            "project_id": LookupResolver(self.project_name),
        }

    def work_order_resolvers(self) -> Dict[str, FieldResolver]:
        return {
            "client_id": LookupResolver(self.client_name),
            "project_id": LookupResolver(self.project_name),
            "client_location_id": LookupResolver(self.location_name),
            "quote_id": LookupResolver(self.quote_number),
        }

    def project_resolvers(self) -> Dict[str, FieldResolver]:
        return {
            "client_id": LookupResolver(self.client_name, action="client_changed"),
        }
