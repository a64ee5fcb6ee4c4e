from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.association import AssociationManager
from app.services.errors import (
    AlreadyAssociated, IncompleteEvidence, InvalidTransition, LifecycleError,
    MissingAssociation, NotEditable, StaleAssociation, StorageError, ValidationError,
)
from app.services.project_changes import ProjectChanges
from app.services.quote_lifecycle import QuoteLifecycle
from app.services.storage import Storage
from app.services.work_order_lifecycle import WorkOrderLifecycle

# Most specific first: AuditWriteError is a StorageError, StaleTotals a ValidationError
ERROR_STATUS_CODES = (
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (AlreadyAssociated, status.HTTP_409_CONFLICT),
    (StaleAssociation, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransition, status.HTTP_400_BAD_REQUEST),
    (IncompleteEvidence, status.HTTP_400_BAD_REQUEST),
    (NotEditable, status.HTTP_400_BAD_REQUEST),
    (MissingAssociation, status.HTTP_400_BAD_REQUEST),
)


def to_http_exception(error: LifecycleError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.detail)


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return Storage(db)


def get_quote_lifecycle(storage: Storage = Depends(get_storage)) -> QuoteLifecycle:
    return QuoteLifecycle(
        resolvers=storage.quote_resolvers(),
        material_names=storage.material_name,
    )


def get_work_order_lifecycle(storage: Storage = Depends(get_storage)) -> WorkOrderLifecycle:
    return WorkOrderLifecycle(
        resolvers=storage.work_order_resolvers(),
        technician_names=storage.technician_name,
        material_names=storage.material_name,
    )


def get_project_changes(storage: Storage = Depends(get_storage)) -> ProjectChanges:
    return ProjectChanges(resolvers=storage.project_resolvers())


def get_association_manager(
    storage: Storage = Depends(get_storage),
    quotes: QuoteLifecycle = Depends(get_quote_lifecycle),
    work_orders: WorkOrderLifecycle = Depends(get_work_order_lifecycle),
) -> AssociationManager:
    return AssociationManager(storage, quotes, work_orders)
