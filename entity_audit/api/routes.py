"""Read-only API routes over the audit history."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from entity_audit.api.schemas import EntityRevisionResponse, RevisionResponse
from entity_audit.database import get_db
from entity_audit.errors import NoRevisionFoundError, NotAuditedError
from entity_audit.manager import AuditManager
from entity_audit.services.descriptors import EntityDescriptor
from entity_audit.services.reader import AuditReader

router = APIRouter()


def get_audit_manager(request: Request) -> AuditManager:
    """Dependency returning the manager installed by create_app."""
    return request.app.state.audit_manager


def get_reader(
    db: Session = Depends(get_db),
    manager: AuditManager = Depends(get_audit_manager),
) -> AuditReader:
    return manager.create_reader(db)


def _descriptor(manager: AuditManager, entity_name: str) -> EntityDescriptor:
    try:
        return manager.describe(manager.audited_class(entity_name))
    except NotAuditedError as exc:
        raise HTTPException(status_code=404, detail=exc.message)


def _identifier(descriptor: EntityDescriptor, entity_id: str):
    """Path identifiers are comma separated, in primary key order."""
    parts = entity_id.split(",")
    if len(parts) != len(descriptor.identifier):
        raise HTTPException(
            status_code=400,
            detail=f"{descriptor.name} expects {len(descriptor.identifier)} identifier value(s)"
        )
    identifier = {}
    for name, raw in zip(descriptor.identifier, parts):
        try:
            python_type = descriptor.field(name).type.python_type
        except NotImplementedError:
            python_type = str
        try:
            identifier[name] = python_type(raw)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"Invalid value for {name}: {raw}")
    return identifier


# Revision endpoints
@router.get("/revisions", response_model=List[RevisionResponse])
def list_revisions(
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    reader: AuditReader = Depends(get_reader),
):
    """Most recent revisions first."""
    revisions = reader.find_revision_history(limit=limit, offset=offset)
    return [RevisionResponse.model_validate(r) for r in revisions]


@router.get("/revisions/{revision_id}", response_model=RevisionResponse)
def get_revision(revision_id: int, reader: AuditReader = Depends(get_reader)):
    try:
        return RevisionResponse.model_validate(reader.find_revision(revision_id))
    except NoRevisionFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)


@router.get("/revisions/{revision_id}/changes", response_model=List[EntityRevisionResponse])
def list_revision_changes(revision_id: int, reader: AuditReader = Depends(get_reader)):
    """Every entity written by one revision."""
    try:
        reader.find_revision(revision_id)
    except NoRevisionFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    changes = reader.find_entities_changed_at_revision(revision_id)
    return [EntityRevisionResponse.model_validate(s) for s in changes]


# Entity endpoints
@router.get("/entities/{entity_name}/{entity_id}/revisions", response_model=List[RevisionResponse])
def list_entity_revisions(
    entity_name: str,
    entity_id: str,
    reader: AuditReader = Depends(get_reader),
    manager: AuditManager = Depends(get_audit_manager),
):
    descriptor = _descriptor(manager, entity_name)
    revisions = reader.find_revisions(descriptor.entity_class, _identifier(descriptor, entity_id))
    return [RevisionResponse.model_validate(r) for r in revisions]


@router.get("/entities/{entity_name}/{entity_id}/history", response_model=List[EntityRevisionResponse])
def get_entity_history(
    entity_name: str,
    entity_id: str,
    reader: AuditReader = Depends(get_reader),
    manager: AuditManager = Depends(get_audit_manager),
):
    """Every recorded state of one entity, most recent first."""
    descriptor = _descriptor(manager, entity_name)
    history = reader.get_entity_history(descriptor.entity_class, _identifier(descriptor, entity_id))
    return [EntityRevisionResponse.model_validate(s) for s in history]


@router.get(
    "/entities/{entity_name}/{entity_id}/revisions/{revision_id}",
    response_model=EntityRevisionResponse
)
def get_entity_at_revision(
    entity_name: str,
    entity_id: str,
    revision_id: int,
    reader: AuditReader = Depends(get_reader),
    manager: AuditManager = Depends(get_audit_manager),
):
    """State of one entity as of a revision."""
    descriptor = _descriptor(manager, entity_name)
    try:
        snapshot = reader.find(descriptor.entity_class, _identifier(descriptor, entity_id), revision_id)
    except NoRevisionFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    return EntityRevisionResponse.model_validate(snapshot)
