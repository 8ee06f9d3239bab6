"""
Audit reader - reconstructs entity history from the audit tables.

Snapshots are plain dictionaries keyed by attribute name; entities are not
re-hydrated. Comparing two snapshots is left to the caller.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Table, and_, desc, exists, select
from sqlalchemy.orm import Session

from entity_audit.errors import NoRevisionFoundError
from entity_audit.models.enums import ColumnSource, RevisionType
from entity_audit.services.descriptors import EntityDescriptor


@dataclass(frozen=True)
class Revision:
    id: int
    timestamp: datetime
    username: Optional[str]


@dataclass(frozen=True)
class EntitySnapshot:
    """State of one entity as recorded by one revision."""
    entity_class: type
    revision: int
    revision_type: RevisionType
    identifier: Dict[str, Any]
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_name(self) -> str:
        return self.entity_class.__name__


class AuditReader:
    """Read-only queries over the revision and audit tables of a manager."""

    def __init__(self, session: Session, manager):
        self.session = session
        self.manager = manager
        self.config = manager.config
        self.revisions = manager.schema.revision_table

    def find_revision(self, revision_id: int) -> Revision:
        row = self.session.execute(
            select(self.revisions).where(self.revisions.c.id == revision_id)
        ).mappings().first()
        if row is None:
            raise NoRevisionFoundError(f"Revision {revision_id} does not exist")
        return self._revision(row)

    def find_revision_history(self, limit: int = 20, offset: int = 0) -> List[Revision]:
        """Most recent revisions first."""
        rows = self.session.execute(
            select(self.revisions).order_by(desc(self.revisions.c.id)).limit(limit).offset(offset)
        ).mappings()
        return [self._revision(row) for row in rows]

    def find_revisions(self, entity_class: type, identifier: Any) -> List[Revision]:
        """Revisions that changed the entity, most recent first."""
        descriptor = self.manager.describe(entity_class)
        audit = self._table(descriptor)
        ids = self._identifier(descriptor, identifier)
        rev_column = audit.c[self.config.revision_field_name]

        statement = (
            select(self.revisions)
            .join(audit, rev_column == self.revisions.c.id)
            .where(self._match(descriptor, audit, ids))
            .order_by(desc(self.revisions.c.id))
        )
        return [self._revision(row) for row in self.session.execute(statement).mappings()]

    def get_current_revision(self, entity_class: type, identifier: Any) -> Optional[int]:
        revisions = self.find_revisions(entity_class, identifier)
        return revisions[0].id if revisions else None

    def find(self, entity_class: type, identifier: Any, revision: int) -> EntitySnapshot:
        """
        State of the entity at the given revision.

        Uses the latest audit row at or before the revision; a snapshot whose
        revision_type is DEL means the entity no longer existed.
        """
        descriptor = self.manager.describe(entity_class)
        audit = self._table(descriptor)
        ids = self._identifier(descriptor, identifier)
        rev_column = audit.c[self.config.revision_field_name]

        row = self.session.execute(
            select(audit)
            .where(and_(self._match(descriptor, audit, ids), rev_column <= revision))
            .order_by(desc(rev_column))
            .limit(1)
        ).mappings().first()
        if row is None:
            raise NoRevisionFoundError(
                f"No revision of {descriptor.name} {ids} at or before revision {revision}"
            )
        return self._snapshot(descriptor, row)

    def get_entity_history(self, entity_class: type, identifier: Any) -> List[EntitySnapshot]:
        """Every recorded state of the entity, most recent first."""
        descriptor = self.manager.describe(entity_class)
        audit = self._table(descriptor)
        ids = self._identifier(descriptor, identifier)
        rows = self.session.execute(
            select(audit)
            .where(self._match(descriptor, audit, ids))
            .order_by(desc(audit.c[self.config.revision_field_name]))
        ).mappings()
        return [self._snapshot(descriptor, row) for row in rows]

    def find_entities_changed_at_revision(self, revision: int) -> List[EntitySnapshot]:
        """Snapshots of every audited entity written by one revision."""
        changed = []
        for entity_class in self.manager.audited_classes:
            descriptor = self.manager.describe(entity_class)
            audit = self._table(descriptor)
            rev_column = audit.c[self.config.revision_field_name]
            statement = select(audit).where(rev_column == revision)

            if descriptor.stores_discriminator:
                # shared table: keep rows of this exact class
                discriminator = descriptor.discriminator
                statement = statement.where(audit.c[discriminator.column] == discriminator.value)
            elif descriptor.is_joined:
                # subclass rows also land in this table
                root = self.manager.descriptors.ancestors(entity_class)[-1]
                if root.discriminator is not None:
                    # the root row tells them apart
                    root_audit = self._table(root)
                    statement = statement.join(
                        root_audit, self._same_row(root, root_audit, descriptor, audit)
                    ).where(root_audit.c[root.discriminator.column] == descriptor.discriminator.value)
                else:
                    # without a discriminator, a row is this class's when no subclass level has one
                    for child in self._joined_children(descriptor):
                        child_audit = self._table(child)
                        statement = statement.where(
                            ~exists().where(self._same_row(child, child_audit, descriptor, audit))
                        )

            rows = self.session.execute(statement).mappings()
            changed.extend(self._snapshot(descriptor, row) for row in rows)
        return changed

    def _table(self, descriptor: EntityDescriptor) -> Table:
        return self.manager.schema.audit_table(descriptor)

    def _joined_children(self, descriptor: EntityDescriptor) -> List[EntityDescriptor]:
        children = []
        for entity_class in self.manager.audited_classes:
            candidate = self.manager.describe(entity_class)
            if candidate.is_joined and candidate.parent_class is descriptor.entity_class:
                children.append(candidate)
        return children

    def _same_row(
        self,
        other: EntityDescriptor,
        other_audit: Table,
        descriptor: EntityDescriptor,
        audit: Table,
    ):
        """Rows of two levels of one joined hierarchy written for the same entity and revision."""
        revision = self.config.revision_field_name
        criteria = [other_audit.c[revision] == audit.c[revision]]
        criteria.extend(
            other_audit.c[other.field(name).column] == audit.c[descriptor.field(name).column]
            for name in descriptor.identifier
        )
        return and_(*criteria)

    @staticmethod
    def _identifier(descriptor: EntityDescriptor, identifier: Any) -> Dict[str, Any]:
        if isinstance(identifier, Mapping):
            missing = [name for name in descriptor.identifier if name not in identifier]
            if missing:
                raise ValueError(f"Identifier of {descriptor.name} is missing {', '.join(missing)}")
            return {name: identifier[name] for name in descriptor.identifier}
        if len(descriptor.identifier) != 1:
            raise ValueError(f"{descriptor.name} has a composite identifier, pass a mapping")
        return {descriptor.identifier[0]: identifier}

    @staticmethod
    def _match(descriptor: EntityDescriptor, audit: Table, identifier: Mapping[str, Any]):
        return and_(*[
            audit.c[descriptor.field(name).column] == value
            for name, value in identifier.items()
        ])

    @staticmethod
    def _revision(row) -> Revision:
        return Revision(id=row["id"], timestamp=row["timestamp"], username=row["username"])

    def _snapshot(self, descriptor: EntityDescriptor, row) -> EntitySnapshot:
        """Merge the row with the rows of every joined ancestor at the same revision."""
        revision = row[self.config.revision_field_name]
        identifier = {
            name: row[descriptor.field(name).column] for name in descriptor.identifier
        }

        data: Dict[str, Any] = {}
        levels = self.manager.descriptors.ancestors(descriptor.entity_class)
        for level in levels:
            if level is descriptor:
                level_row = row
            else:
                audit = self._table(level)
                level_row = self.session.execute(
                    select(audit).where(and_(
                        audit.c[self.config.revision_field_name] == revision,
                        self._match(level, audit, identifier),
                    ))
                ).mappings().first()
                if level_row is None:
                    continue
            for key, value in self._row_data(level, level_row).items():
                data.setdefault(key, value)

        return EntitySnapshot(
            entity_class=descriptor.entity_class,
            revision=revision,
            revision_type=RevisionType(row[self.config.revision_type_field_name]),
            identifier=identifier,
            data=data,
        )

    def _row_data(self, descriptor: EntityDescriptor, row) -> Dict[str, Any]:
        data = {}
        for spec in self.manager.descriptors.insert_columns(descriptor.entity_class):
            if spec.source is ColumnSource.FIELD:
                data[spec.field.name] = row[spec.name]
            elif spec.source is ColumnSource.ASSOCIATION:
                data[spec.join_column.source_field or spec.name] = row[spec.name]
            elif spec.source is ColumnSource.DISCRIMINATOR:
                data[descriptor.discriminator.key] = row[spec.name]
        return data
