"""
Project Changes
Field edits on projects and the history entries they produce.
"""

from typing import Any, Dict, Optional
import logging

from app.schemas import ChangeLogEntry, ProjectRecord, TransitionContext, TransitionResult
from app.services.change_differ import ChangeDiffer, DateResolver, FieldResolver, StatusResolver
from app.services.errors import ValidationError

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name", "description", "client_id", "status",
    "start_date", "end_date", "estimated_completion_date",
}


def default_project_resolvers() -> Dict[str, FieldResolver]:
    return {
        "status": StatusResolver(),
        "start_date": DateResolver(action="date_changed"),
        "end_date": DateResolver(action="date_changed"),
        "estimated_completion_date": DateResolver(action="date_changed"),
    }


class ProjectChanges:

    def __init__(self, differ: Optional[ChangeDiffer] = None, resolvers: Optional[Dict[str, FieldResolver]] = None):
        self.differ = differ or ChangeDiffer()
        self.resolvers = default_project_resolvers()
        if resolvers:
            self.resolvers.update(resolvers)

    @staticmethod
    def _check(project: ProjectRecord) -> None:
        if not (project.name or "").strip():
            raise ValidationError("Project name is required")
        if project.start_date and project.end_date and project.end_date < project.start_date:
            raise ValidationError("end_date cannot be before start_date")

    def create(self, project: ProjectRecord, ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()
        self._check(project)
        record = project.model_copy(update={"created_at": ctx.now})
        entry = ChangeLogEntry(
            entity_type="project",
            action="created",
            notes=f"Project {record.name} created",
            actor=ctx.actor,
            created_at=ctx.now,
        )
        return TransitionResult(
            entity_type="project",
            record=record,
            patch=record.model_dump(exclude={"id"}),
            log_entries=[entry],
            is_new=True,
        )

    def edit(self, project: ProjectRecord, changes: Dict[str, Any],
             ctx: Optional[TransitionContext] = None) -> TransitionResult:
        ctx = ctx or TransitionContext()

        not_allowed = sorted(set(changes) - EDITABLE_FIELDS)
        if not_allowed:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(not_allowed)}")

        changed = {field: value for field, value in changes.items() if getattr(project, field) != value}
        if not changed:
            return TransitionResult(entity_type="project", record=project)

        candidate = project.model_copy(update=changed)
        self._check(candidate)

        entries = self.differ.diff(
            "project", project.id,
            {field: getattr(project, field) for field in changed}, changed,
            self.resolvers, actor=ctx.actor, now=ctx.now,
        )
        logger.info(f"Project {project.id} updated ({', '.join(changed)}) by {ctx.actor}")
        return TransitionResult(entity_type="project", record=candidate, patch=changed, log_entries=entries)
