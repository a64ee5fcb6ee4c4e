"""
Shared fixtures: an in-memory database per test, seeded reference data,
record builders for the pure services and an authenticated API client.
"""

import os

# Point the app at an in-memory database before app.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_USERNAME"] = ""

from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.models import Client, ClientLocation, Material, Project, Technician
from app.schemas import (
    QuoteItemRecord, QuoteRecord, TransitionContext, WorkOrderMaterialRecord,
    WorkOrderRecord, WorkOrderTechnicianRecord,
)
from app.services.pricing import compute_quote_totals, priced_items, totals_patch
from app.services.quote_lifecycle import QuoteLifecycle
from app.services.storage import Storage
from app.services.work_order_lifecycle import WorkOrderLifecycle
from app.utils.security import create_access_token
from main import app

NOW = datetime(2025, 3, 10, 9, 30)
ACTOR = "dispatcher@example.com"

EVIDENCE = {
    "photos_before": ["https://files.example.com/wo/before-1.jpg"],
    "photos_after": ["https://files.example.com/wo/after-1.jpg"],
    "technician_notes": "Replaced ballast and two tubes",
    "client_signature": "https://files.example.com/wo/signature.png",
    "client_signature_name": "Jordan Lee",
}


def labor_item(**overrides) -> QuoteItemRecord:
    data = {"description": "Labor", "quantity": Decimal("3"), "unit_price": Decimal("15.00")}
    data.update(overrides)
    return QuoteItemRecord(**data)


def build_quote(items=None, **overrides) -> QuoteRecord:
    """A quote whose stored totals agree with its items"""
    data = {
        "id": 1,
        "quote_number": "QT-2025-00001",
        "client_id": 1,
        "title": "Lobby lighting retrofit",
        "status": "draft",
        "issue_date": date(2025, 3, 1),
        "valid_until": date(2025, 4, 30),
        "apply_tax": True,
        "tax_rate": Decimal("8.25"),
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
    }
    data.update(overrides)
    quote = QuoteRecord(**data)
    priced = priced_items(items if items is not None else [labor_item()])
    return quote.model_copy(update={"items": priced, **totals_patch(compute_quote_totals(quote, priced))})


def build_work_order(**overrides) -> WorkOrderRecord:
    data = {
        "id": 7,
        "wo_number": "WO-2025-00007",
        "title": "Lobby lighting retrofit",
        "client_id": 1,
        "status": "draft",
        "technicians": [WorkOrderTechnicianRecord(technician_id=1, technician_name="Dana Reyes", role="Lead")],
        "materials": [WorkOrderMaterialRecord(material_id=1, material_name="LED Panel 2x4", quantity=Decimal("4"))],
    }
    data.update(overrides)
    return WorkOrderRecord(**data)


@pytest.fixture
def ctx():
    return TransitionContext(actor=ACTOR, now=NOW)


@pytest.fixture
def make_quote():
    return build_quote


@pytest.fixture
def make_work_order():
    return build_work_order


@pytest.fixture
def evidence():
    return dict(EVIDENCE)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def storage(db):
    return Storage(db)


@pytest.fixture
def seed(db):
    """Reference data the quotes and work orders point at"""
    acme = Client(name="Acme Facilities", email="ops@acme.example.com")
    globex = Client(name="Globex Corp", email="facilities@globex.example.com")
    db.add_all([acme, globex])
    db.flush()

    location = ClientLocation(client_id=acme.id, location_name="Acme HQ", city="Springfield")
    project = Project(name="HQ Retrofit", client_id=acme.id)
    dana = Technician(name="Dana Reyes")
    sam = Technician(name="Sam Patel")
    panel = Material(name="LED Panel 2x4", sku="LED-24", unit_price=Decimal("89.50"))
    wire = Material(name="Copper Wire 12AWG", sku="CW-12", unit_price=Decimal("0.85"))
    db.add_all([location, project, dana, sam, panel, wire])
    db.commit()

    return SimpleNamespace(
        client_id=acme.id,
        other_client_id=globex.id,
        location_id=location.id,
        project_id=project.id,
        dana_id=dana.id,
        sam_id=sam.id,
        panel_id=panel.id,
        wire_id=wire.id,
    )


@pytest.fixture
def quote_lifecycle(storage):
    return QuoteLifecycle(resolvers=storage.quote_resolvers(), material_names=storage.material_name)


@pytest.fixture
def work_order_lifecycle(storage):
    return WorkOrderLifecycle(
        resolvers=storage.work_order_resolvers(),
        technician_names=storage.technician_name,
        material_names=storage.material_name,
    )


QUOTE_PATHS = {
    "draft": [],
    "sent": ["sent"],
    "approved": ["sent", "approved"],
    "rejected": ["sent", "rejected"],
}


@pytest.fixture
def saved_quote(storage, seed, quote_lifecycle):
    """Create a quote in the database and walk it to the requested status"""
    def _create(status="approved", client_id=None, items=None):
        ctx = TransitionContext(actor="sales@example.com")
        quote = QuoteRecord(
            client_id=client_id or seed.client_id,
            project_id=seed.project_id,
            title="Lobby lighting retrofit",
            apply_tax=True,
            tax_rate=Decimal("8.25"),
            discount_type="percentage",
            discount_value=Decimal("10"),
        )
        [saved] = storage.apply(quote_lifecycle.create(quote, items or [labor_item()], ctx))
        for target in QUOTE_PATHS[status]:
            [saved] = storage.apply(quote_lifecycle.transition(saved, target, ctx))
        return saved
    return _create


@pytest.fixture
def saved_work_order(storage, seed, work_order_lifecycle):
    def _create(client_id=None, title="Replace lobby fixtures"):
        ctx = TransitionContext(actor=ACTOR)
        record = WorkOrderRecord(
            title=title,
            client_id=client_id or seed.client_id,
            client_location_id=seed.location_id,
            technicians=[WorkOrderTechnicianRecord(technician_id=seed.dana_id, role="Lead")],
        )
        [saved] = storage.apply(work_order_lifecycle.create(record, ctx))
        return saved
    return _create


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token(data={"sub": ACTOR})
    return {"Authorization": f"Bearer {token}"}
