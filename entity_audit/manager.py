"""
Audit manager - tracks classes and connects sessions to their flush pipeline.

Usage::

    manager = AuditManager(AuditConfiguration(global_ignore_columns={"updated_at"}))
    manager.track(Order, Customer)
    manager.register(sessionmaker(bind=engine))
    manager.create_schema(engine)
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import MetaData, event
from sqlalchemy.orm import Session, object_session

from entity_audit.config import AuditConfiguration
from entity_audit.errors import NotAuditedError
from entity_audit.models.audit import AuditSchema
from entity_audit.services.context import SessionContext, recompute_change_set
from entity_audit.services.descriptors import DescriptorCache, EntityDescriptor
from entity_audit.services.encoder import RowEncoder
from entity_audit.services.pipeline import FlushPipeline, ManagedDeletionHook
from entity_audit.services.reader import AuditReader
from entity_audit.services.revisions import RevisionAllocator
from entity_audit.services.storage import AuditStorage

logger = logging.getLogger(__name__)

_SESSION_EVENTS = ("before_flush", "after_flush", "after_soft_rollback")
_MAPPER_EVENTS = ("after_insert", "after_update", "after_delete")


class AuditManager:
    """
    Owns the shared, read-mostly parts of the audit engine.

    Descriptors, the encoder and the schema are shared by every session.
    Each Session gets its own FlushPipeline (stored in ``session.info``),
    so concurrent sessions never share per-flush state.
    """

    def __init__(
        self,
        config: Optional[AuditConfiguration] = None,
        metadata: Optional[MetaData] = None,
        managed_deletion_hook: Optional[ManagedDeletionHook] = recompute_change_set,
    ):
        self.config = config or AuditConfiguration()
        self.metadata = metadata if metadata is not None else MetaData()
        self.schema = AuditSchema(self.config, self.metadata)
        self.descriptors = DescriptorCache(self.config)
        self.encoder = RowEncoder(self.descriptors)
        self.managed_deletion_hook = managed_deletion_hook

        self._audited: Dict[type, EntityDescriptor] = {}
        self._listeners: List[Tuple[Any, str, Any]] = []

    # Tracking

    def track(self, *entity_classes: type) -> None:
        """
        Audit the given classes.

        Joined-inheritance ancestors are tracked too: their tables receive a
        row for every change of a subclass.
        """
        for entity_class in entity_classes:
            for descriptor in self.descriptors.ancestors(entity_class):
                if descriptor.entity_class in self._audited:
                    continue
                self.descriptors.insert_columns(descriptor.entity_class)
                self.schema.add(descriptor)
                self._audited[descriptor.entity_class] = descriptor
                for name in _MAPPER_EVENTS:
                    self._listen(descriptor.entity_class, name, getattr(self, f"_{name}"))
                logger.debug("Auditing %s into %s", descriptor.name, self.config.table_name(descriptor.table))

    def is_audited(self, entity_class: type) -> bool:
        return entity_class in self._audited

    @property
    def audited_classes(self) -> Tuple[type, ...]:
        return tuple(self._audited)

    def audited_class(self, name: str) -> type:
        """Look up a tracked class by its class name."""
        for entity_class in self._audited:
            if entity_class.__name__ == name:
                return entity_class
        raise NotAuditedError(name)

    def describe(self, entity_class: type) -> EntityDescriptor:
        if entity_class not in self._audited:
            raise NotAuditedError(entity_class.__name__)
        return self._audited[entity_class]

    # Sessions

    def register(self, target):
        """
        Audit flushes of a Session, a sessionmaker or a Session subclass.

        Returns the target so it can be used inline.
        """
        self._listen(target, "before_flush", self._before_flush)
        self._listen(target, "after_flush", self._after_flush)
        self._listen(target, "after_soft_rollback", self._after_soft_rollback)
        return target

    def pipeline_for(self, session: Session) -> FlushPipeline:
        pipeline = session.info.get(self)
        if pipeline is None:
            pipeline = FlushPipeline(
                config=self.config,
                descriptors=self.descriptors,
                encoder=self.encoder,
                allocator=RevisionAllocator(self.schema, self.config),
                is_audited=self.is_audited,
                managed_deletion_hook=self.managed_deletion_hook,
            )
            session.info[self] = pipeline
        return pipeline

    def create_reader(self, session: Session) -> AuditReader:
        return AuditReader(session, self)

    def create_schema(self, bind) -> None:
        """Create the revision and audit tables that do not exist yet."""
        self.metadata.create_all(bind)

    def dispose(self) -> None:
        """Remove every event listener installed by this manager."""
        while self._listeners:
            target, name, fn = self._listeners.pop()
            event.remove(target, name, fn)

    def _listen(self, target, name: str, fn) -> None:
        event.listen(target, name, fn)
        self._listeners.append((target, name, fn))

    # Event handlers

    def _active_pipeline(self, entity: object) -> Optional[FlushPipeline]:
        session = object_session(entity)
        if session is None:
            return None
        return session.info.get(self)

    def _before_flush(self, session, flush_context, instances) -> None:
        context = SessionContext(session, self.descriptors, flush_context)
        self.pipeline_for(session).flush_started(context, session.deleted)

    def _after_flush(self, session, flush_context) -> None:
        pipeline = self.pipeline_for(session)
        storage = AuditStorage(session.connection(), self.schema)
        pipeline.flush_completed(storage)

    def _after_soft_rollback(self, session, previous_transaction) -> None:
        pipeline = session.info.get(self)
        if pipeline is not None:
            pipeline.discard()

    def _after_insert(self, mapper, connection, target) -> None:
        pipeline = self._active_pipeline(target)
        if pipeline is not None:
            pipeline.entity_inserted(target)

    def _after_update(self, mapper, connection, target) -> None:
        pipeline = self._active_pipeline(target)
        if pipeline is not None:
            pipeline.entity_updated(target)

    def _after_delete(self, mapper, connection, target) -> None:
        pipeline = self._active_pipeline(target)
        if pipeline is not None:
            pipeline.entity_deleted(target)
