"""
Change Differ
Derives audit trail entries from field-level differences between the old and
new state of an entity.

- One entry per changed scalar field (action "field_updated" unless the
  field's resolver says otherwise, e.g. "status_changed")
- Collections (quote items, technicians, materials) are diffed as sets:
  added / removed / changed members, described by name rather than id
- Never raises because of a resolver: a failing resolver falls back to the
  raw value rendering and the other fields are still logged
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple
import logging

from pydantic import BaseModel

from app.schemas import ChangeLogEntry

logger = logging.getLogger(__name__)

EMPTY = "(empty)"

# Identity and bookkeeping fields are never diffed
IDENTITY_FIELDS = frozenset({
    "id", "quote_number", "wo_number", "created_at", "updated_at", "created_by",
})

# Diffed member by member through diff_collection()
COLLECTION_FIELDS = frozenset({"items", "technicians", "materials"})


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == ()


def render_value(value: Any) -> str:
    """Plain display rendering used when a field has no resolver"""
    if is_empty(value):
        return EMPTY
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral_value() else format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat(timespec="minutes")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(render_value(v) for v in value)
    return str(value)


class FieldResolver:
    """Renders one field's values for the log, optionally tagging a dedicated action"""

    def __init__(self, action: Optional[str] = None):
        self.action = action

    def render(self, value: Any) -> str:
        return render_value(value)


class StatusResolver(FieldResolver):
    def __init__(self, action: str = "status_changed"):
        super().__init__(action)


class LookupResolver(FieldResolver):
    """Resolves a foreign key (client_id, location...) to its display name"""

    def __init__(self, lookup: Callable[[Any], Optional[str]], action: Optional[str] = None):
        super().__init__(action)
        self.lookup = lookup

    def render(self, value: Any) -> str:
        if is_empty(value):
            return EMPTY
        name = self.lookup(value)
        return name if name else str(value)


class DateResolver(FieldResolver):
    def __init__(self, fmt: str = "%b %d, %Y", action: Optional[str] = None):
        super().__init__(action)
        self.fmt = fmt

    def render(self, value: Any) -> str:
        if is_empty(value):
            return EMPTY
        if isinstance(value, str):
            value = date.fromisoformat(value[:10])
        return value.strftime(self.fmt)


class BooleanResolver(FieldResolver):
    def __init__(self, true_label: str = "Yes", false_label: str = "No", action: Optional[str] = None):
        super().__init__(action)
        self.true_label = true_label
        self.false_label = false_label

    def render(self, value: Any) -> str:
        return self.true_label if value else self.false_label


def _as_dict(record: Any) -> Dict[str, Any]:
    if record is None:
        return {}
    if isinstance(record, BaseModel):
        return record.model_dump()
    return dict(record)


class ChangeDiffer:
    """Pure comparison of two entity states into ChangeLogEntry rows"""

    def __init__(self, excluded_fields: Iterable[str] = IDENTITY_FIELDS | COLLECTION_FIELDS,
                 default_resolvers: Optional[Dict[str, FieldResolver]] = None):
        self.excluded_fields = frozenset(excluded_fields)
        # Status changes are tagged as such even when the caller passes no resolvers
        self.default_resolvers = {"status": StatusResolver()}
        if default_resolvers:
            self.default_resolvers.update(default_resolvers)

    def _render(self, resolver: FieldResolver, field: str, value: Any) -> str:
        try:
            return resolver.render(value)
        except Exception as e:
            logger.warning(f"Resolver for '{field}' failed on {value!r}, logging raw value: {e}")
            return render_value(value)

    def diff(
        self,
        entity_type: str,
        entity_id: Optional[int],
        old_record: Any,
        new_record: Any,
        field_resolvers: Optional[Dict[str, FieldResolver]] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ChangeLogEntry]:
        """
        Compare every mutable field present in both records.
        Returns an empty list when nothing changed.
        """
        resolvers = field_resolvers or {}
        old = _as_dict(old_record)
        new = _as_dict(new_record)
        created_at = now or datetime.utcnow()

        entries = []
        for field, new_value in new.items():
            if field in self.excluded_fields or field not in old:
                continue
            old_value = old[field]
            if old_value == new_value:
                continue
            if is_empty(old_value) and is_empty(new_value):
                continue

            resolver = resolvers.get(field) or self.default_resolvers.get(field) or FieldResolver()
            entries.append(ChangeLogEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=resolver.action or "field_updated",
                field_name=field,
                old_value=self._render(resolver, field, old_value),
                new_value=self._render(resolver, field, new_value),
                actor=actor,
                created_at=created_at,
            ))
        return entries

    def diff_collection(
        self,
        entity_type: str,
        entity_id: Optional[int],
        field_name: str,
        old_items: Sequence[Any],
        new_items: Sequence[Any],
        key: Callable[[Any], Optional[Hashable]],
        describe: Callable[[Any], str],
        compare: Optional[Callable[[Any, Any], List[Tuple[str, Optional[str], Optional[str]]]]] = None,
        added_action: str = "item_added",
        removed_action: str = "item_removed",
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ChangeLogEntry]:
        """
        Set-diff two collections by key. Members whose key is None are new.

        compare(old, new) returns (action, old_value, new_value) tuples for a
        member present on both sides; no tuples means unchanged.
        """
        created_at = now or datetime.utcnow()

        def entry(action, old_value=None, new_value=None):
            return ChangeLogEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
                actor=actor,
                created_at=created_at,
            )

        def safe_describe(item):
            try:
                return describe(item)
            except Exception as e:
                logger.warning(f"Could not describe {field_name} member {item!r}: {e}")
                return render_value(key(item))

        old_by_key = {key(item): item for item in old_items if key(item) is not None}
        new_keys = set()
        entries = []

        for item in new_items:
            item_key = key(item)
            if item_key is None or item_key not in old_by_key:
                entries.append(entry(added_action, new_value=safe_describe(item)))
                continue
            new_keys.add(item_key)
            if compare is None:
                continue
            try:
                changes = compare(old_by_key[item_key], item)
            except Exception as e:
                logger.warning(f"Could not compare {field_name} member {item_key!r}: {e}")
                changes = []
            for action, old_value, new_value in changes:
                entries.append(entry(action, old_value=old_value, new_value=new_value))

        for item_key, item in old_by_key.items():
            if item_key not in new_keys:
                entries.append(entry(removed_action, old_value=safe_describe(item)))

        return entries
