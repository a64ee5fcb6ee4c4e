from fastapi import APIRouter, Depends, HTTPException, status
from typing import List
import logging

from app.api.auth import get_current_actor
from app.schemas import ChangeLogEntry, ProjectCreate, ProjectRecord, ProjectUpdate, TransitionContext
from app.services.dependency import get_project_changes, get_storage, to_http_exception
from app.services.errors import LifecycleError
from app.services.project_changes import ProjectChanges
from app.services.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_project(storage: Storage, project_id: int) -> ProjectRecord:
    project = storage.get_project(project_id)
    if not project:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


@router.post("/projects/", response_model=ProjectRecord, status_code=status.HTTP_201_CREATED)
async def create_project(
    data: ProjectCreate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    changes: ProjectChanges = Depends(get_project_changes),
):
    if data.client_id and not storage.client_name(data.client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    try:
        [project] = storage.apply(changes.create(ProjectRecord(**data.model_dump()), TransitionContext(actor=actor)))
    except LifecycleError as e:
        raise to_http_exception(e)

    logger.info(f"Project {project.id} created by {actor}")
    return project


@router.get("/projects/{project_id}", response_model=ProjectRecord)
async def get_project(
    project_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    return _load_project(storage, project_id)


@router.patch("/projects/{project_id}", response_model=ProjectRecord)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
    changes: ProjectChanges = Depends(get_project_changes),
):
    """Update a project; every changed field is written to its history"""
    project = _load_project(storage, project_id)
    update = data.model_dump(exclude_unset=True)
    if update.get("client_id") and not storage.client_name(update["client_id"]):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    try:
        [saved] = storage.apply(changes.edit(project, update, TransitionContext(actor=actor)))
    except LifecycleError as e:
        raise to_http_exception(e)
    return saved


@router.get("/projects/{project_id}/history", response_model=List[ChangeLogEntry])
async def get_project_history(
    project_id: int,
    actor: str = Depends(get_current_actor),
    storage: Storage = Depends(get_storage),
):
    _load_project(storage, project_id)
    return storage.list_change_log("project", project_id)
