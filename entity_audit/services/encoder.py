"""
Row encoder - turns one entity snapshot into audit rows.

Column selection and ordering come from the memoized insert shape of each
class. Under joined-table inheritance the encoder walks the ancestor chain
from the leaf to the root and emits one row per level, every row sharing the
revision id and revision type.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from entity_audit.errors import UnresolvedAssociationError
from entity_audit.models.enums import ColumnSource, RevisionType
from entity_audit.services.descriptors import (
    AssociationDescriptor,
    DescriptorCache,
    EntityDescriptor,
    JoinColumn,
)

logger = logging.getLogger(__name__)


class IdentifierResolver(Protocol):
    def identifier_in_memory(self, entity: object) -> Optional[Dict[str, Any]]:
        ...


@dataclass
class AuditRow:
    """One append-only audit record, columns in insert order."""
    entity_class: type
    table: str
    values: List[Tuple[str, Any]] = field(default_factory=list)

    @property
    def columns(self) -> List[str]:
        return [name for name, _ in self.values]

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.values)


_MISSING = object()


class RowEncoder:
    """Encodes snapshots using descriptors and table names from the cache."""

    def __init__(self, descriptors: DescriptorCache):
        self.descriptors = descriptors

    def encode(
        self,
        descriptor: EntityDescriptor,
        revision_type: RevisionType,
        snapshot: Mapping[str, Any],
        revision_id: Any,
        resolver: IdentifierResolver,
    ) -> List[AuditRow]:
        """
        Encode a snapshot into one row per inheritance level, root first.

        The snapshot maps attribute names to values; association attributes
        hold the related object (or are absent when not loaded).
        """
        data = dict(snapshot)
        chain = self.descriptors.ancestors(descriptor.entity_class)

        if descriptor.is_joined and not descriptor.is_root:
            root = chain[-1]
            if root.discriminator is not None:
                data[root.discriminator.key] = descriptor.discriminator.value

        rows = [
            self._encode_level(level, revision_type, data, revision_id, resolver)
            for level in chain
        ]
        rows.reverse()
        return rows

    def _encode_level(
        self,
        descriptor: EntityDescriptor,
        revision_type: RevisionType,
        data: Dict[str, Any],
        revision_id: Any,
        resolver: IdentifierResolver,
    ) -> AuditRow:
        row = AuditRow(
            entity_class=descriptor.entity_class,
            table=self.descriptors.config.table_name(descriptor.table),
        )
        related_ids: Dict[str, Optional[Dict[str, Any]]] = {}

        for spec in self.descriptors.insert_columns(descriptor.entity_class):
            if spec.source is ColumnSource.REVISION:
                value = revision_id
            elif spec.source is ColumnSource.REVISION_TYPE:
                value = revision_type
            elif spec.source is ColumnSource.ASSOCIATION:
                assoc = spec.association
                if assoc.name not in related_ids:
                    related_ids[assoc.name] = self._related_identifier(data, assoc, resolver)
                value = self._join_column_value(
                    descriptor, assoc, spec.join_column, data, related_ids[assoc.name]
                )
            elif spec.source is ColumnSource.FIELD:
                value = data.get(spec.field.name)
            else:
                value = self._discriminator_value(descriptor, data)
            row.values.append((spec.name, value))

        return row

    @staticmethod
    def _related_identifier(
        data: Mapping[str, Any],
        assoc: AssociationDescriptor,
        resolver: IdentifierResolver,
    ) -> Optional[Dict[str, Any]]:
        related = data.get(assoc.name, _MISSING)
        if related is _MISSING or related is None:
            return None
        return resolver.identifier_in_memory(related)

    @staticmethod
    def _join_column_value(
        descriptor: EntityDescriptor,
        assoc: AssociationDescriptor,
        join_column: JoinColumn,
        data: Mapping[str, Any],
        related_id: Optional[Dict[str, Any]],
    ) -> Any:
        if related_id is not None:
            return related_id.get(join_column.target_field)

        # Fall back to the foreign key value the flush already synchronized
        value = None
        if join_column.source_field is not None:
            value = data.get(join_column.source_field)
        if value is None and join_column.source_field in descriptor.identifier:
            raise UnresolvedAssociationError(descriptor.entity_class, assoc.name, join_column.source)
        if value is None and data.get(assoc.name) is not None:
            logger.debug(
                "Association %s.%s is not resolvable in the session, storing null",
                descriptor.name, assoc.name,
            )
        return value

    @staticmethod
    def _discriminator_value(descriptor: EntityDescriptor, data: Mapping[str, Any]) -> Any:
        discriminator = descriptor.discriminator
        if descriptor.is_joined:
            value = data.get(discriminator.key)
            return value if value is not None else discriminator.value
        return discriminator.value
