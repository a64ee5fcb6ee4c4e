from pydantic import BaseModel, Field
from datetime import datetime, date, time
from decimal import Decimal
from typing import Optional, List, Literal, Any, Dict, Union


EntityType = Literal["quote", "work_order", "project"]
QuoteStatus = Literal["draft", "sent", "approved", "rejected", "expired", "converted"]
WorkOrderStatus = Literal["draft", "scheduled", "in_progress", "on_hold", "completed", "cancelled"]
ProjectStatus = Literal["active", "completed", "on_hold", "cancelled"]
DiscountType = Literal["percentage", "fixed"]


# ============================================================================
# Core records (the state the lifecycle services reason about)
# ============================================================================

class QuoteItemRecord(BaseModel):
    id: Optional[int] = None
    item_type: Literal["material", "custom"] = "custom"
    material_id: Optional[int] = None
    description: str = ""
    quantity: Decimal
    unit_price: Decimal
    subtotal: Optional[Decimal] = None  # quantity * unit_price, filled by the pricing service
    notes: Optional[str] = None
    display_order: Optional[int] = None

    class Config:
        from_attributes = True


class QuoteTotals(BaseModel):
    """Full-precision quote totals. Round only for display."""
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class QuoteRecord(BaseModel):
    id: Optional[int] = None
    quote_number: Optional[str] = None
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    title: str = ""
    description: Optional[str] = None
    status: QuoteStatus = "draft"
    issue_date: Optional[date] = None
    valid_until: Optional[date] = None

    # Pricing inputs
    apply_tax: bool = False
    tax_rate: Decimal = Decimal("0")
    discount_type: Optional[DiscountType] = "percentage"
    discount_value: Decimal = Decimal("0")

    # Pricing outputs (derived, never hand-edited)
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")

    terms_and_conditions: Optional[str] = None
    internal_notes: Optional[str] = None

    # Association with the work order this quote was converted to
    converted_to_wo_id: Optional[int] = None
    converted_at: Optional[datetime] = None

    items: List[QuoteItemRecord] = []

    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def totals(self) -> QuoteTotals:
        return QuoteTotals(
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            discount_amount=self.discount_amount,
            total=self.total,
        )


class WorkOrderTechnicianRecord(BaseModel):
    technician_id: int
    technician_name: Optional[str] = None
    role: Optional[str] = None

    class Config:
        from_attributes = True


class WorkOrderMaterialRecord(BaseModel):
    material_id: int
    material_name: Optional[str] = None
    quantity: Decimal = Decimal("1")
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class WorkOrderRecord(BaseModel):
    id: Optional[int] = None
    wo_number: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    status: WorkOrderStatus = "draft"
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    work_type: Literal["installation", "maintenance", "repair", "inspection", "other"] = "other"

    # Relationships
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    client_location_id: Optional[int] = None
    quote_id: Optional[int] = None

    # Manual address
    manual_address: Optional[str] = None
    manual_city: Optional[str] = None
    manual_state: Optional[str] = None
    manual_zip_code: Optional[str] = None
    manual_country: Optional[str] = None

    # Point of contact at the location
    poc_name: Optional[str] = None
    poc_email: Optional[str] = None
    poc_phone: Optional[str] = None
    poc_title: Optional[str] = None

    # Schedule
    scheduled_date: Optional[date] = None
    scheduled_start_time: Optional[time] = None
    scheduled_end_time: Optional[time] = None
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None

    # Evidence bundle
    photos_before: List[str] = []
    photos_after: List[str] = []
    technician_notes: Optional[str] = None
    client_signature: Optional[str] = None
    client_signature_name: Optional[str] = None

    technicians: List[WorkOrderTechnicianRecord] = []
    materials: List[WorkOrderMaterialRecord] = []

    created_by: Optional[str] = None
    completed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectRecord(BaseModel):
    id: Optional[int] = None
    name: str = ""
    description: Optional[str] = None
    client_id: Optional[int] = None
    status: ProjectStatus = "active"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    estimated_completion_date: Optional[date] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChangeLogEntry(BaseModel):
    """One immutable audit row. Values are display strings, never raw ids."""
    id: Optional[int] = None
    entity_type: EntityType
    entity_id: Optional[int] = None  # back-filled by storage for new entities
    action: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    notes: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
        frozen = True


# ============================================================================
# Transition plumbing
# ============================================================================

class TransitionContext(BaseModel):
    """Who is asking, when, and any extras that ride along with the request"""
    actor: Optional[str] = None
    now: datetime = Field(default_factory=datetime.utcnow)
    override: bool = False  # authorized reset of a terminal quote back to draft
    notes: Optional[str] = None
    items: Optional[List[QuoteItemRecord]] = None  # item edits applied with a quote transition


class TransitionResult(BaseModel):
    """
    Everything the storage collaborator must write, as one atomic unit:
    the entity patch and the change log entries that describe it.
    """
    entity_type: EntityType
    record: Union[QuoteRecord, WorkOrderRecord, ProjectRecord]
    patch: Dict[str, Any] = {}
    log_entries: List[ChangeLogEntry] = []
    is_new: bool = False


class AssociationResult(BaseModel):
    """Both sides of a quote/work order pair as persisted, plus what was logged"""
    quote: QuoteRecord
    work_order: WorkOrderRecord
    log_entries: List[ChangeLogEntry] = []
    changed: bool = True


# ============================================================================
# API request bodies
# ============================================================================

class QuoteItemInput(BaseModel):
    id: Optional[int] = None
    item_type: Literal["material", "custom"] = "custom"
    material_id: Optional[int] = None
    description: str = ""
    quantity: Decimal
    unit_price: Decimal
    notes: Optional[str] = None
    display_order: Optional[int] = None


class QuoteCreate(BaseModel):
    client_id: int
    project_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    issue_date: Optional[date] = None
    valid_until: Optional[date] = None
    apply_tax: bool = False
    tax_rate: Optional[Decimal] = None
    discount_type: Optional[DiscountType] = "percentage"
    discount_value: Decimal = Decimal("0")
    terms_and_conditions: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[QuoteItemInput] = []
    send_to_client: bool = False
    work_order_id: Optional[int] = None  # associate an existing work order right away


class QuoteUpdate(BaseModel):
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    issue_date: Optional[date] = None
    valid_until: Optional[date] = None
    apply_tax: Optional[bool] = None
    tax_rate: Optional[Decimal] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    terms_and_conditions: Optional[str] = None
    internal_notes: Optional[str] = None


class QuoteItemsUpdate(BaseModel):
    items: List[QuoteItemInput]


class QuoteStatusUpdate(BaseModel):
    status: QuoteStatus
    notes: Optional[str] = None
    override: bool = False
    items: Optional[List[QuoteItemInput]] = None


class WorkOrderTechnicianInput(BaseModel):
    technician_id: int
    role: Optional[str] = None


class WorkOrderMaterialInput(BaseModel):
    material_id: int
    quantity: Decimal = Decimal("1")
    notes: Optional[str] = None


class WorkOrderCreate(BaseModel):
    title: str
    description: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    work_type: Literal["installation", "maintenance", "repair", "inspection", "other"] = "other"
    client_id: int
    project_id: Optional[int] = None
    client_location_id: Optional[int] = None
    manual_address: Optional[str] = None
    manual_city: Optional[str] = None
    manual_state: Optional[str] = None
    manual_zip_code: Optional[str] = None
    manual_country: Optional[str] = None
    poc_name: Optional[str] = None
    poc_email: Optional[str] = None
    poc_phone: Optional[str] = None
    poc_title: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_start_time: Optional[time] = None
    scheduled_end_time: Optional[time] = None
    technicians: List[WorkOrderTechnicianInput] = []
    materials: List[WorkOrderMaterialInput] = []
    quote_id: Optional[int] = None  # convert an approved quote into this new work order


class WorkOrderUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    work_type: Optional[Literal["installation", "maintenance", "repair", "inspection", "other"]] = None
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    client_location_id: Optional[int] = None
    manual_address: Optional[str] = None
    manual_city: Optional[str] = None
    manual_state: Optional[str] = None
    manual_zip_code: Optional[str] = None
    manual_country: Optional[str] = None
    poc_name: Optional[str] = None
    poc_email: Optional[str] = None
    poc_phone: Optional[str] = None
    poc_title: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_start_time: Optional[time] = None
    scheduled_end_time: Optional[time] = None
    technician_notes: Optional[str] = None


class WorkOrderTechniciansUpdate(BaseModel):
    technicians: List[WorkOrderTechnicianInput]


class WorkOrderMaterialsUpdate(BaseModel):
    materials: List[WorkOrderMaterialInput]


class WorkOrderCompleteRequest(BaseModel):
    technician_notes: Optional[str] = None
    photos_before: Optional[List[str]] = None
    photos_after: Optional[List[str]] = None
    client_signature: Optional[str] = None
    client_signature_name: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ReopenRequest(BaseModel):
    clear_evidence: bool = False


class AssociationRequest(BaseModel):
    work_order_id: int
    expected_quote_status: Optional[QuoteStatus] = None
    expected_work_order_quote_id: Optional[int] = None


class QuoteAssociationRequest(BaseModel):
    quote_id: int
    expected_quote_status: Optional[QuoteStatus] = None
    expected_work_order_quote_id: Optional[int] = None


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None
    client_id: Optional[int] = None
    status: ProjectStatus = "active"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    estimated_completion_date: Optional[date] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    client_id: Optional[int] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    estimated_completion_date: Optional[date] = None


class ExpirySweepResult(BaseModel):
    expired: List[str]
    # Overdue quotes that could not be expired, e.g. stale totals
    skipped: List[str] = []
