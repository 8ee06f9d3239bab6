"""
Descriptor cache - structural metadata of mapped classes.

Descriptors are built once per class from the SQLAlchemy mapper and never
rebuilt at encode time. The insert shape of each audit table (which column is
filled from where, in which order) is memoized next to them.
"""
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import Table, inspect
from sqlalchemy.orm import Mapper, RelationshipDirection
from sqlalchemy.orm.exc import UnmappedColumnError
from sqlalchemy.types import TypeEngine

from entity_audit.config import AuditConfiguration
from entity_audit.errors import MappingError
from entity_audit.models.enums import ColumnSource, InheritanceKind


@dataclass(frozen=True)
class FieldDescriptor:
    """A mapped column attribute."""
    name: str
    column: str
    type: TypeEngine
    inherited: bool
    identifier: bool


@dataclass(frozen=True)
class JoinColumn:
    """One foreign key column of an owning to-one association."""
    source: str
    target: str
    source_field: Optional[str]
    target_field: str


@dataclass(frozen=True)
class AssociationDescriptor:
    name: str
    owning_side: bool
    to_one: bool
    target: type
    join_columns: Tuple[JoinColumn, ...]
    inherited: bool


@dataclass(frozen=True)
class DiscriminatorDescriptor:
    column: str
    field: Optional[str]
    value: Any

    @property
    def key(self) -> str:
        """Snapshot key holding the discriminator value."""
        return self.field or self.column


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Immutable description of one mapped class.

    ``table`` is the table holding this class level's own columns: the
    subclass table for joined inheritance, the shared table for single-table
    inheritance.
    """
    entity_class: type
    name: str
    table: str
    fields: Tuple[FieldDescriptor, ...]
    associations: Tuple[AssociationDescriptor, ...]
    inheritance: InheritanceKind
    discriminator: Optional[DiscriminatorDescriptor]
    identifier: Tuple[str, ...]
    version_field: Optional[str]
    root_class: type
    parent_class: Optional[type]

    @property
    def is_root(self) -> bool:
        return self.entity_class is self.root_class

    @property
    def is_joined(self) -> bool:
        return self.inheritance is InheritanceKind.JOINED

    @property
    def stores_discriminator(self) -> bool:
        """Single-table classes and joined roots carry the discriminator column."""
        if self.discriminator is None:
            return False
        if self.inheritance is InheritanceKind.SINGLE_TABLE:
            return True
        return self.is_joined and self.is_root

    def field(self, name: str) -> FieldDescriptor:
        for field in self.fields:
            if field.name == name:
                return field
        raise KeyError(name)

    def emitted_associations(self) -> Tuple[AssociationDescriptor, ...]:
        """Owning to-one associations whose columns live in this class level's table."""
        return tuple(
            assoc for assoc in self.associations
            if assoc.to_one and assoc.owning_side and not (self.is_joined and assoc.inherited)
        )


@dataclass(frozen=True)
class ColumnSpec:
    """One column of an audit insert and the source of its value."""
    name: str
    source: ColumnSource
    field: Optional[FieldDescriptor] = None
    association: Optional[AssociationDescriptor] = None
    join_column: Optional[JoinColumn] = None


def _mapper_for(entity_class: type) -> Mapper:
    mapper = inspect(entity_class, raiseerr=False)
    if not isinstance(mapper, Mapper):
        raise MappingError(f"{entity_class!r} is not a mapped class")
    return mapper


def _property_key(mapper: Mapper, column) -> Optional[str]:
    try:
        return mapper.get_property_by_column(column).key
    except UnmappedColumnError:
        return None


def _inheritance_kind(mapper: Mapper) -> InheritanceKind:
    name = mapper.class_.__name__
    if mapper.concrete:
        raise MappingError(f"Concrete table inheritance is not supported ({name})")

    root = mapper.base_mapper
    joined = any(m.inherits is not None and not m.single for m in root.self_and_descendants)
    if joined:
        if mapper.single:
            raise MappingError(
                f"Single-table subclass {name} inside a joined hierarchy is not supported"
            )
        return InheritanceKind.JOINED
    if root.polymorphic_on is not None:
        return InheritanceKind.SINGLE_TABLE
    return InheritanceKind.NONE


def _build_descriptor(entity_class: type) -> EntityDescriptor:
    mapper = _mapper_for(entity_class)
    name = entity_class.__name__
    local_table = mapper.local_table
    if not isinstance(local_table, Table):
        raise MappingError(f"{name} is not mapped to a table")

    identifier = tuple(_property_key(mapper, column) for column in mapper.primary_key)
    if not identifier or None in identifier:
        raise MappingError(f"{name} has unmapped primary key columns")

    fields = []
    for prop in mapper.column_attrs:
        columns = [c for c in prop.columns if isinstance(getattr(c, "table", None), Table)]
        if not columns:
            # SQL expression attributes are not persisted
            continue
        local = [c for c in columns if c.table is local_table]
        column = local[0] if local else columns[0]
        fields.append(FieldDescriptor(
            name=prop.key,
            column=column.name,
            type=column.type,
            inherited=not local,
            identifier=prop.key in identifier,
        ))

    associations = []
    for rel in mapper.relationships:
        owning = rel.direction is RelationshipDirection.MANYTOONE
        join_columns = []
        if owning:
            target_mapper = rel.mapper
            for local_col, remote_col in rel.local_remote_pairs:
                target_field = _property_key(target_mapper, remote_col)
                if target_field is None:
                    raise MappingError(
                        f"{name}.{rel.key} references unmapped column {remote_col}"
                    )
                join_columns.append(JoinColumn(
                    source=local_col.name,
                    target=remote_col.name,
                    source_field=_property_key(mapper, local_col),
                    target_field=target_field,
                ))
            if not join_columns:
                raise MappingError(f"{name}.{rel.key} has no join columns")
        associations.append(AssociationDescriptor(
            name=rel.key,
            owning_side=owning,
            to_one=not rel.uselist,
            target=rel.mapper.class_,
            join_columns=tuple(join_columns),
            inherited=rel.parent is not mapper,
        ))

    discriminator = None
    if mapper.polymorphic_on is not None:
        column = mapper.polymorphic_on
        column_name = getattr(column, "name", None)
        if not column_name:
            raise MappingError(f"{name} uses a discriminator expression without a column name")
        discriminator = DiscriminatorDescriptor(
            column=column_name,
            field=_property_key(mapper, column),
            value=mapper.polymorphic_identity,
        )

    version_field = None
    if mapper.version_id_col is not None:
        version_field = _property_key(mapper, mapper.version_id_col)

    return EntityDescriptor(
        entity_class=entity_class,
        name=name,
        table=local_table.name,
        fields=tuple(fields),
        associations=tuple(associations),
        inheritance=_inheritance_kind(mapper),
        discriminator=discriminator,
        identifier=identifier,
        version_field=version_field,
        root_class=mapper.base_mapper.class_,
        parent_class=mapper.inherits.class_ if mapper.inherits is not None else None,
    )


class DescriptorCache:
    """
    Per-class descriptor and insert-shape lookup.

    Safe to share between sessions: entries are computed once per class under
    a lock and are immutable afterwards.
    """

    def __init__(self, config: AuditConfiguration):
        self.config = config
        self._lock = threading.RLock()
        self._descriptors: Dict[type, EntityDescriptor] = {}
        self._insert_columns: Dict[type, Tuple[ColumnSpec, ...]] = {}

    def describe(self, entity_class: type) -> EntityDescriptor:
        descriptor = self._descriptors.get(entity_class)
        if descriptor is None:
            with self._lock:
                descriptor = self._descriptors.get(entity_class)
                if descriptor is None:
                    descriptor = _build_descriptor(entity_class)
                    self._descriptors[entity_class] = descriptor
        return descriptor

    def ancestors(self, entity_class: type) -> Tuple[EntityDescriptor, ...]:
        """Descriptors from the class itself up to its joined-inheritance root."""
        chain = [self.describe(entity_class)]
        while chain[-1].is_joined and not chain[-1].is_root:
            chain.append(self.describe(chain[-1].parent_class))
        return tuple(chain)

    def insert_columns(self, entity_class: type) -> Tuple[ColumnSpec, ...]:
        specs = self._insert_columns.get(entity_class)
        if specs is None:
            with self._lock:
                specs = self._insert_columns.get(entity_class)
                if specs is None:
                    specs = self._build_insert_columns(self.describe(entity_class))
                    self._insert_columns[entity_class] = specs
        return specs

    def _build_insert_columns(self, descriptor: EntityDescriptor) -> Tuple[ColumnSpec, ...]:
        specs = [
            ColumnSpec(self.config.revision_field_name, ColumnSource.REVISION),
            ColumnSpec(self.config.revision_type_field_name, ColumnSource.REVISION_TYPE),
        ]

        association_columns = set()
        for assoc in descriptor.emitted_associations():
            for join_column in assoc.join_columns:
                association_columns.add(join_column.source)
                specs.append(ColumnSpec(
                    join_column.source,
                    ColumnSource.ASSOCIATION,
                    association=assoc,
                    join_column=join_column,
                ))

        stores_discriminator = descriptor.stores_discriminator
        for field in descriptor.fields:
            # Foreign key columns belong to their association
            if field.column in association_columns:
                continue
            if descriptor.is_joined and field.inherited and not field.identifier:
                continue
            if stores_discriminator and field.column == descriptor.discriminator.column:
                continue
            specs.append(ColumnSpec(field.column, ColumnSource.FIELD, field=field))

        if stores_discriminator:
            specs.append(ColumnSpec(descriptor.discriminator.column, ColumnSource.DISCRIMINATOR))

        names = [spec.name for spec in specs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MappingError(
                f"Audit columns of {descriptor.name} collide: {', '.join(duplicates)}"
            )
        return tuple(specs)
