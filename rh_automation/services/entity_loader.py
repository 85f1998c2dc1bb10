"""Entity Loader - Laedt Entitaeten mit den benoetigten Relationen als Snapshot.

Der Commit-Hook liefert nur IDs. Fuer Bedingungen und Templates wird die
Entitaet in einer frischen Session neu geladen, und zwar genau mit den
Relationen, die Bedingungs-Pfade (``project.company.name``) und Template-
Aliase brauchen. Ergebnis ist ein verschachteltes dict, das ohne Session
weiterverwendet werden kann.
"""

import logging
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import RelationshipDirection, selectinload

from rh_automation.models import (
    Analysis,
    AutomationEntityType,
    Candidate,
    Project,
    User,
)
from rh_automation.services.condition_evaluator import is_resolved, resolve_field

logger = logging.getLogger(__name__)

MODEL_BY_TYPE: dict[AutomationEntityType, type] = {
    AutomationEntityType.CANDIDATE: Candidate,
    AutomationEntityType.PROJECT: Project,
    AutomationEntityType.ANALYSIS: Analysis,
    AutomationEntityType.USER: User,
}

# Relationen fuer Template-Aliase (company_name, project_name) und Empfaenger-Tokens
TEMPLATE_RELATIONS: dict[AutomationEntityType, tuple[str, ...]] = {
    AutomationEntityType.CANDIDATE: ("project.company", "project.creator"),
    AutomationEntityType.PROJECT: ("company", "creator"),
    AutomationEntityType.ANALYSIS: ("candidate", "project.company", "project.creator"),
    AutomationEntityType.USER: ("company",),
}


def relation_path(model: type, field_path: str) -> str | None:
    """Laengster Relations-Praefix eines Feldpfads.

    ``project.company.name`` auf Candidate → ``project.company``;
    ``status`` → None. Unbekannte Segmente beenden den Pfad.
    """
    current = model
    relations: list[str] = []
    for segment in field_path.split("."):
        relationships = inspect(current).relationships
        if segment not in relationships:
            break
        relations.append(segment)
        current = relationships[segment].mapper.class_
    return ".".join(relations) or None


def relation_paths_for(entity_type: AutomationEntityType, field_paths: Iterable[str]) -> set[str]:
    """Relations-Pfade fuer Feldpfade plus die festen Template-Relationen."""
    model = MODEL_BY_TYPE[entity_type]
    paths = set(TEMPLATE_RELATIONS[entity_type])
    for field_path in field_paths:
        path = relation_path(model, field_path)
        if path:
            paths.add(path)
    return paths


def build_load_options(model: type, relation_paths: Iterable[str]) -> list:
    """``selectinload``-Ketten fuer alle Relations-Pfade."""
    options = []
    for path in sorted(set(relation_paths)):
        current = model
        loader = None
        for segment in path.split("."):
            attr = getattr(current, segment)
            loader = selectinload(attr) if loader is None else loader.selectinload(attr)
            current = inspect(current).relationships[segment].mapper.class_
        if loader is not None:
            options.append(loader)
    return options


def _path_tree(relation_paths: Iterable[str]) -> dict[str, dict]:
    tree: dict[str, dict] = {}
    for path in relation_paths:
        node = tree
        for segment in path.split("."):
            node = node.setdefault(segment, {})
    return tree


def _snapshot(obj: Any, tree: Mapping[str, Mapping]) -> dict[str, Any]:
    state = inspect(obj)
    # Nur geladene Werte lesen, nie Lazy-Loads ausloesen
    data = {attr.key: state.dict.get(attr.key) for attr in state.mapper.column_attrs}
    if isinstance(obj, User):
        data["name"] = obj.name

    for name, subtree in tree.items():
        if name in state.unloaded or name not in state.mapper.relationships:
            continue
        value = state.dict.get(name)
        if value is None:
            data[name] = None
        elif isinstance(value, (list, tuple, set)):
            data[name] = [_snapshot(item, subtree) for item in value]
        else:
            data[name] = _snapshot(value, subtree)
    return data


def to_snapshot(obj: Any, relation_paths: Iterable[str] = ()) -> dict[str, Any]:
    """ORM-Instanz → verschachteltes dict (Spalten + geladene Relationen)."""
    return _snapshot(obj, _path_tree(relation_paths))


async def load_snapshot(
    session: AsyncSession,
    entity_type: AutomationEntityType,
    entity_id: uuid.UUID,
    relation_paths: Iterable[str],
) -> dict[str, Any] | None:
    """Laedt die Entitaet neu. None, wenn sie nicht (mehr) existiert."""
    model = MODEL_BY_TYPE[entity_type]
    paths = set(relation_paths)
    result = await session.execute(
        select(model).where(model.id == entity_id).options(*build_load_options(model, paths))
    )
    obj = result.scalar_one_or_none()
    if obj is None:
        return None
    return to_snapshot(obj, paths)


async def load_deleted_snapshot(
    session: AsyncSession,
    entity_type: AutomationEntityType,
    snapshot: Mapping[str, Any],
    relation_paths: Iterable[str],
) -> dict[str, Any]:
    """Ergaenzt den Spalten-Snapshot einer geloeschten Entitaet um ihre Eltern.

    Die Zeile selbst ist weg; Eltern-Relationen (many-to-one) werden ueber
    die Fremdschluessel im Snapshot geladen.
    """
    model = MODEL_BY_TYPE[entity_type]
    relationships = inspect(model).relationships
    data = dict(snapshot)

    for name, subtree in _path_tree(relation_paths).items():
        if name not in relationships:
            continue
        prop = relationships[name]
        if prop.direction is not RelationshipDirection.MANYTOONE:
            continue
        fk_column = next(iter(prop.local_columns)).key
        fk_value = snapshot.get(fk_column)
        if fk_value is None:
            data[name] = None
            continue

        target = prop.mapper.class_
        child_paths = _flatten(subtree)
        result = await session.execute(
            select(target)
            .where(target.id == fk_value)
            .options(*build_load_options(target, child_paths))
        )
        parent = result.scalar_one_or_none()
        data[name] = to_snapshot(parent, child_paths) if parent is not None else None

    return data


def _flatten(tree: Mapping[str, Mapping], prefix: str = "") -> list[str]:
    paths = []
    for name, subtree in tree.items():
        path = f"{prefix}{name}"
        paths.append(path)
        paths.extend(_flatten(subtree, f"{path}."))
    return paths


def extract_company_id(snapshot: Mapping[str, Any]) -> uuid.UUID | None:
    """Firma der Entitaet (direkt oder ueber das Projekt)."""
    for path in ("company_id", "project.company_id", "candidate.project.company_id"):
        value = resolve_field(snapshot, path)
        if is_resolved(value):
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    return None
