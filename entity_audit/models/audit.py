"""
Audit tables - the revision table and one shadow table per audited entity table.

These tables are append-only. Nothing in this package updates or deletes
their rows; history is reconstructed from them by the audit reader.
"""
from typing import Dict

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, MetaData, String, Table, inspect

from entity_audit.config import AuditConfiguration
from entity_audit.errors import MappingError
from entity_audit.models.enums import RevisionType
from entity_audit.services.descriptors import EntityDescriptor


def revision_type_enum() -> SQLEnum:
    """Stores INS/UPD/DEL rather than the member names."""
    return SQLEnum(
        RevisionType,
        name="revision_type",
        native_enum=False,
        length=3,
        values_callable=lambda kinds: [kind.value for kind in kinds],
    )


class AuditSchema:
    """
    Builds audit tables into a MetaData collection.

    Invariants:
    - One revision table: id, timestamp, username
    - One audit table per entity table, shared by every class stored in it
    - Audit primary key is (revision id, entity primary key)
    """

    def __init__(self, config: AuditConfiguration, metadata: MetaData):
        self.config = config
        self.metadata = metadata
        self._tables: Dict[str, Table] = {}

        self.revision_table = Table(
            config.revision_table_name,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("timestamp", DateTime(timezone=True), nullable=False),
            Column("username", String(255), nullable=True),
        )

    def add(self, descriptor: EntityDescriptor) -> Table:
        """Create (once) the audit table for the descriptor's entity table."""
        table = self._tables.get(descriptor.table)
        if table is not None:
            return table

        source = inspect(descriptor.entity_class).local_table
        reserved = {self.config.revision_field_name, self.config.revision_type_field_name}
        clashes = sorted(reserved.intersection(c.name for c in source.columns))
        if clashes:
            raise MappingError(
                f"Table '{source.name}' uses reserved audit column names: {', '.join(clashes)}"
            )

        columns = [
            Column(
                self.config.revision_field_name,
                Integer,
                ForeignKey(self.revision_table.c.id),
                primary_key=True,
                autoincrement=False,
            ),
            Column(self.config.revision_type_field_name, revision_type_enum(), nullable=False),
        ]
        for column in source.columns:
            # Entity constraints and defaults are not carried over
            columns.append(Column(
                column.name,
                column.type,
                primary_key=column.primary_key,
                nullable=not column.primary_key,
                autoincrement=False,
            ))

        table = Table(self.config.table_name(source.name), self.metadata, *columns)
        self._tables[descriptor.table] = table
        return table

    def audit_table(self, descriptor: EntityDescriptor) -> Table:
        try:
            return self._tables[descriptor.table]
        except KeyError:
            raise MappingError(f"No audit table registered for {descriptor.name}") from None
