from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Date, Time, Numeric, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Client(Base):
    """Customer the field work is done for"""
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    locations = relationship("ClientLocation", back_populates="client", cascade="all, delete-orphan")


class ClientLocation(Base):
    """A site belonging to a client where work orders are executed"""
    __tablename__ = "client_locations"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    location_name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    country = Column(String, nullable=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    client = relationship("Client", back_populates="locations")


class Project(Base):
    """Groups quotes and work orders for a client"""
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    status = Column(String, default="active")  # active, completed, on_hold, cancelled
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    estimated_completion_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    client = relationship("Client")


class Technician(Base):
    """Field worker that can be assigned to work orders"""
    __tablename__ = "technicians"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    hire_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class Material(Base):
    """Part or consumable that can be quoted or used on a work order"""
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, nullable=True, index=True)
    part_number = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    unit_of_measure = Column(String, default="each")
    unit_cost = Column(Numeric(12, 4), nullable=True)
    unit_price = Column(Numeric(12, 4), nullable=True)
    quantity_in_stock = Column(Numeric(12, 3), default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class Quote(Base):
    """Priced proposal of line items for a client"""
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    quote_number = Column(String, nullable=False, unique=True, index=True)  # Auto-generated, immutable
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default="draft", index=True)  # draft, sent, approved, rejected, expired, converted
    issue_date = Column(Date, nullable=True)
    valid_until = Column(Date, nullable=True)

    # Pricing inputs
    apply_tax = Column(Boolean, default=False)
    tax_rate = Column(Numeric(7, 4), default=0)  # percent, e.g. 8.25
    discount_type = Column(String, nullable=True)  # percentage, fixed
    discount_value = Column(Numeric(14, 4), default=0)

    # Pricing outputs (derived from items, stored at full precision)
    subtotal = Column(Numeric(18, 6), default=0)
    tax_amount = Column(Numeric(18, 6), default=0)
    discount_amount = Column(Numeric(18, 6), default=0)
    total = Column(Numeric(18, 6), default=0)

    terms_and_conditions = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)

    # Weak reference to the work order this quote was converted to
    converted_to_wo_id = Column(Integer, ForeignKey("work_orders.id", use_alter=True, name="fk_quotes_converted_to_wo_id"), nullable=True)
    converted_at = Column(DateTime, nullable=True)

    # Audit
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    client = relationship("Client")
    project = relationship("Project", backref="quotes")
    items = relationship("QuoteItem", back_populates="quote", cascade="all, delete-orphan", order_by="QuoteItem.display_order")


class QuoteItem(Base):
    """Line item owned by a quote"""
    __tablename__ = "quote_items"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    item_type = Column(String, nullable=False, default="custom")  # material, custom
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=True)
    description = Column(Text, nullable=True)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False)
    subtotal = Column(Numeric(18, 6), nullable=False)  # quantity * unit_price
    notes = Column(Text, nullable=True)
    display_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    quote = relationship("Quote", back_populates="items")
    material = relationship("Material")


class WorkOrder(Base):
    """Schedulable unit of field work for a client location"""
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, index=True)

    # Work order identification
    wo_number = Column(String, nullable=False, unique=True, index=True)  # Auto-generated WO number
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    # Priority, type and status
    priority = Column(String, default="medium")  # low, medium, high, urgent
    work_type = Column(String, default="other")  # installation, maintenance, repair, inspection, other
    status = Column(String, default="draft", index=True)  # draft, scheduled, in_progress, on_hold, completed, cancelled

    # Relationships to the client and its location
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)
    client_location_id = Column(Integer, ForeignKey("client_locations.id"), nullable=True)

    # Weak reference to the quote this work order came from (mirrors Quote.converted_to_wo_id)
    quote_id = Column(Integer, ForeignKey("quotes.id", use_alter=True, name="fk_work_orders_quote_id"), nullable=True, index=True)

    # Manual address (when no client location is used)
    manual_address = Column(String, nullable=True)
    manual_city = Column(String, nullable=True)
    manual_state = Column(String, nullable=True)
    manual_zip_code = Column(String, nullable=True)
    manual_country = Column(String, nullable=True)

    # Point of contact at the location
    poc_name = Column(String, nullable=True)
    poc_email = Column(String, nullable=True)
    poc_phone = Column(String, nullable=True)
    poc_title = Column(String, nullable=True)

    # Scheduling
    scheduled_date = Column(Date, nullable=True)
    scheduled_start_time = Column(Time, nullable=True)
    scheduled_end_time = Column(Time, nullable=True)
    actual_start_date = Column(DateTime, nullable=True)
    actual_end_date = Column(DateTime, nullable=True)

    # Evidence bundle
    photos_before = Column(JSON, default=list)  # list of photo URLs
    photos_after = Column(JSON, default=list)
    technician_notes = Column(Text, nullable=True)
    client_signature = Column(String, nullable=True)  # signature image URL
    client_signature_name = Column(String, nullable=True)

    # Audit
    created_by = Column(String, nullable=True)
    completed_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    client = relationship("Client")
    project = relationship("Project", backref="work_orders")
    client_location = relationship("ClientLocation")
    technician_assignments = relationship("WorkOrderTechnician", back_populates="work_order", cascade="all, delete-orphan")
    material_lines = relationship("WorkOrderMaterial", back_populates="work_order", cascade="all, delete-orphan")


class WorkOrderTechnician(Base):
    """Technician assigned to a work order"""
    __tablename__ = "work_order_technicians"
    __table_args__ = (UniqueConstraint("work_order_id", "technician_id", name="uq_work_order_technician"),)

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=False)
    role = Column(String, nullable=True)  # e.g. "Lead", "Helper"
    assigned_at = Column(DateTime, default=func.now())

    # Relationships
    work_order = relationship("WorkOrder", back_populates="technician_assignments")
    technician = relationship("Technician")


class WorkOrderMaterial(Base):
    """Material planned or used on a work order"""
    __tablename__ = "work_order_materials"
    __table_args__ = (UniqueConstraint("work_order_id", "material_id", name="uq_work_order_material"),)

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    notes = Column(Text, nullable=True)
    added_by = Column(String, nullable=True)
    added_at = Column(DateTime, default=func.now())

    # Relationships
    work_order = relationship("WorkOrder", back_populates="material_lines")
    material = relationship("Material")


class ChangeLog(Base):
    """Append-only audit trail for quotes, work orders and projects"""
    __tablename__ = "change_log"
    __table_args__ = (Index("ix_change_log_entity", "entity_type", "entity_id"),)

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String, nullable=False)  # quote, work_order, project
    entity_id = Column(Integer, nullable=False)
    action = Column(String, nullable=False)  # status_changed, field_updated, item_added...
    field_name = Column(String, nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    actor = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
