"""
Flush pipeline - the state machine that turns one flush into audit rows.

Idle -> Collecting on flush start, Collecting -> Encoding on flush completion,
Encoding -> Idle once every row is written (or the write failed). The host
drives it through direct calls; nothing here subscribes to events.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from entity_audit.config import AuditConfiguration
from entity_audit.models.enums import FlushState, RevisionType
from entity_audit.services.context import SessionContext
from entity_audit.services.dedup import ChangeDeduplicator
from entity_audit.services.descriptors import DescriptorCache, EntityDescriptor
from entity_audit.services.encoder import AuditRow, RowEncoder
from entity_audit.services.revisions import RevisionAllocator
from entity_audit.services.storage import AuditStorage

logger = logging.getLogger(__name__)

ManagedDeletionHook = Callable[[SessionContext, object], None]


class FlushPipeline:
    """
    Per-session audit state for one flush at a time.

    Invariants:
    - Every row written in one cycle carries the same revision id
    - A deletion is queued at most once per cycle, however often it is reported
    - An update whose changeset is empty after removing ignored fields is not audited
    - Queues are empty whenever the pipeline is Idle
    """

    def __init__(
        self,
        config: AuditConfiguration,
        descriptors: DescriptorCache,
        encoder: RowEncoder,
        allocator: RevisionAllocator,
        is_audited: Callable[[type], bool],
        managed_deletion_hook: Optional[ManagedDeletionHook] = None,
    ):
        self.config = config
        self.descriptors = descriptors
        self.encoder = encoder
        self.allocator = allocator
        self.is_audited = is_audited
        self.managed_deletion_hook = managed_deletion_hook

        self.state = FlushState.IDLE
        self.context: Optional[SessionContext] = None
        self.deduplicator = ChangeDeduplicator()
        self.inserts: List[object] = []
        self.updates: List[object] = []
        self.deletions: List[Tuple[object, Dict[str, Any]]] = []

    def flush_started(self, context: SessionContext, scheduled_deletions: Iterable[object]) -> None:
        """Idle -> Collecting. Captures deletions before the flush removes them."""
        if self.state is not FlushState.IDLE:
            logger.warning("Flush started while %s, discarding previous cycle", self.state.value)
        self.discard()
        self.context = context
        self.state = FlushState.COLLECTING

        for entity in list(scheduled_deletions):
            self._queue_deletion(entity, load=True)

    def entity_deleted(self, entity: object) -> None:
        """A deletion reported after its DELETE ran, e.g. a delete-orphan cascade."""
        if self._collecting("deletion", entity):
            self._queue_deletion(entity, load=False)

    def _queue_deletion(self, entity: object, load: bool) -> None:
        identifier = self.context.identifier(entity)
        # the host may report one deletion several times
        if not self.deduplicator.add(ChangeDeduplicator.hash(type(entity), identifier)):
            return
        if not self.is_audited(type(entity)):
            return
        if load:
            # the row will be gone once the flush ran
            self.context.load(entity)
        self.deletions.append((entity, identifier))

    def entity_inserted(self, entity: object) -> None:
        if self._collecting("insert", entity) and self.is_audited(type(entity)):
            self.inserts.append(entity)

    def entity_updated(self, entity: object) -> None:
        if not self._collecting("update", entity) or not self.is_audited(type(entity)):
            return
        key = ChangeDeduplicator.hash(type(entity), self.context.current_identifier(entity))
        if key in self.deduplicator:
            if any(deleted is entity for deleted, _ in self.deletions):
                # soft delete: the deletion row already covers this entity
                logger.debug("Skipping update of %s, already audited as deletion", key)
                return
            # another object took over the deleted row; the row survives as this update
            logger.debug("Replacing deletion of %s with an update", key)
            self.deletions = [
                (deleted, identifier) for deleted, identifier in self.deletions
                if ChangeDeduplicator.hash(type(deleted), identifier) != key
            ]
        self.updates.append(entity)

    def flush_completed(self, storage: AuditStorage) -> List[AuditRow]:
        """
        Collecting -> Encoding -> Idle. Encodes and writes every queued change.

        Errors propagate to the flush; the pipeline is reset either way.
        """
        if self.state is not FlushState.COLLECTING:
            logger.warning("Flush completed while %s, nothing to audit", self.state.value)
            return []

        self.state = FlushState.ENCODING
        context = self.context
        written: List[AuditRow] = []
        try:
            for entity in self.inserts:
                context.load(entity)
                snapshot = context.field_values(entity)
                written.extend(self._save(storage, entity, RevisionType.INSERT, snapshot))

            for entity in self.updates:
                changeset = context.change_set(entity)
                for name in self.config.global_ignore_columns:
                    changeset.pop(name, None)
                if not changeset:
                    logger.debug("No audited changes left for %s", type(entity).__name__)
                    continue

                context.load(entity)
                descriptor = self.descriptors.describe(type(entity))
                snapshot = context.field_values(entity)
                identifier = context.current_identifier(entity)
                snapshot.update(self._identifier_snapshot(descriptor, identifier, snapshot))
                written.extend(self._save(storage, entity, RevisionType.UPDATE, snapshot))

            for entity, identifier in self.deletions:
                if self.managed_deletion_hook is not None and context.is_managed(entity):
                    self.managed_deletion_hook(context, entity)
                snapshot = context.field_values(entity)
                snapshot.update(identifier)
                written.extend(self._save(storage, entity, RevisionType.DELETE, snapshot))
        finally:
            self.discard()

        if written:
            logger.info("Wrote %d audit rows in revision %s", len(written), written[0].values[0][1])
        return written

    def discard(self) -> None:
        """Drop all per-flush state and return to Idle."""
        self.inserts = []
        self.updates = []
        self.deletions = []
        self.deduplicator.clear()
        self.allocator.reset()
        self.context = None
        self.state = FlushState.IDLE

    def _collecting(self, kind: str, entity: object) -> bool:
        if self.state is FlushState.COLLECTING:
            return True
        logger.warning("Ignoring %s of %s reported while %s", kind, type(entity).__name__, self.state.value)
        return False

    def _identifier_snapshot(
        self,
        descriptor: EntityDescriptor,
        identifier: Dict[str, Any],
        snapshot: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Identifier values, plus the in-memory targets of identifier associations.

        An association whose foreign key is part of the identifier but which
        is not loaded on the entity is looked up in the session.
        """
        merged = dict(identifier)
        for assoc in descriptor.emitted_associations():
            if assoc.name in snapshot:
                continue
            target_identifier = {
                jc.target_field: identifier[jc.source_field]
                for jc in assoc.join_columns
                if jc.source_field in identifier
            }
            if not target_identifier:
                continue
            related = self.context.resolve_in_memory(assoc.target, target_identifier)
            if related is not None:
                merged[assoc.name] = related
        return merged

    def _save(
        self,
        storage: AuditStorage,
        entity: object,
        revision_type: RevisionType,
        snapshot: Dict[str, Any],
    ) -> List[AuditRow]:
        descriptor = self.descriptors.describe(type(entity))
        revision_id = self.allocator.allocate(storage)
        rows = self.encoder.encode(descriptor, revision_type, snapshot, revision_id, self.context)
        for row in rows:
            storage.write(row)
        return rows
