"""
Persistence context - what the pipeline needs to know about a Session mid-flush.

All reads go through instance state rather than attribute access where
possible, so that inspecting an entity never triggers lazy loads the flush
did not ask for.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import Table, and_, inspect, select
from sqlalchemy.orm import Session, attributes
from sqlalchemy.orm.util import identity_key

from entity_audit.services.descriptors import DescriptorCache

logger = logging.getLogger(__name__)


class SessionContext:
    """
    One flush of one Session.

    ``flush_context`` is the UOWTransaction handed to the flush events; it is
    used to tell entities removed by the flush from entities the flush kept.
    """

    def __init__(self, session: Session, descriptors: DescriptorCache, flush_context=None):
        self.session = session
        self.descriptors = descriptors
        self.flush_context = flush_context

    def connection(self):
        return self.session.connection()

    def load(self, entity: object) -> None:
        """Load column attributes that are expired or deferred on the entity."""
        state = inspect(entity)
        descriptor = self.descriptors.describe(type(entity))
        unloaded = state.unloaded
        if state.key is not None and self.current_identifier(entity) != self.identifier(entity):
            # the identity key still names the row as it was before this flush
            names = [f.name for f in descriptor.fields if f.name in unloaded]
            if names:
                values = tuple(self.current_identifier(entity).values())
                self._refresh(entity, values, names)
            return
        for field in descriptor.fields:
            if field.name in unloaded:
                # one access refreshes every expired column at once
                getattr(entity, field.name)
                unloaded = inspect(entity).unloaded

    def field_values(self, entity: object) -> Dict[str, Any]:
        """
        Current column values plus loaded to-one associations.

        Unloaded attributes are left out rather than loaded.
        """
        state = inspect(entity)
        descriptor = self.descriptors.describe(type(entity))
        data = {}
        for field in descriptor.fields:
            if field.name in state.dict:
                data[field.name] = state.dict[field.name]
        for assoc in descriptor.associations:
            if assoc.to_one and assoc.name in state.dict:
                data[assoc.name] = state.dict[assoc.name]
        if descriptor.version_field is not None:
            data[descriptor.version_field] = state.dict.get(descriptor.version_field)
        return data

    def change_set(self, entity: object) -> Dict[str, Tuple[Any, Any]]:
        """Attribute name -> (old, new) for every column or to-one attribute with net changes."""
        state = inspect(entity)
        descriptor = self.descriptors.describe(type(entity))
        names = [f.name for f in descriptor.fields]
        names.extend(a.name for a in descriptor.associations if a.to_one)

        changes = {}
        for name in names:
            history = state.attrs[name].history
            if not history.has_changes():
                continue
            old = history.deleted[0] if history.deleted else None
            new = history.added[0] if history.added else None
            changes[name] = (old, new)
        return changes

    def identifier(self, entity: object) -> Dict[str, Any]:
        """Identifier attribute values, in descriptor order."""
        state = inspect(entity)
        descriptor = self.descriptors.describe(type(entity))
        if state.key is not None:
            return dict(zip(descriptor.identifier, state.key[1]))
        return {name: state.dict.get(name) for name in descriptor.identifier}

    def current_identifier(self, entity: object) -> Dict[str, Any]:
        """
        Identifier as written by this flush.

        Differs from identifier() when the flush changed the primary key: the
        identity key is only replaced once the flush has finished.
        """
        state = inspect(entity)
        descriptor = self.descriptors.describe(type(entity))
        previous = self.identifier(entity)
        return {name: state.dict.get(name, previous[name]) for name in descriptor.identifier}

    def is_managed(self, entity: object) -> bool:
        """False once the flush has removed the entity's row."""
        state = inspect(entity)
        if self.flush_context is not None and self.flush_context.is_deleted(state):
            return False
        return state.persistent and entity not in self.session.deleted

    def resolve_in_memory(self, entity_class: type, identifier: Mapping[str, Any]) -> Optional[object]:
        """Find an entity of the class already present in the session, without querying."""
        descriptor = self.descriptors.describe(entity_class)
        if any(identifier.get(name) is None for name in descriptor.identifier):
            return None
        values = tuple(identifier[name] for name in descriptor.identifier)

        key = identity_key(descriptor.root_class, values)
        found = self.session.identity_map.get(key)
        if found is not None and isinstance(found, entity_class):
            return found

        # entities inserted by this flush have no identity key yet
        for candidate in self.session.new:
            if isinstance(candidate, entity_class) and self.identifier_in_memory(candidate) == dict(
                zip(descriptor.identifier, values)
            ):
                return candidate
        return None

    def identifier_in_memory(self, entity: object) -> Optional[Dict[str, Any]]:
        """Identifier of an entity held by this session, None if it is not resolvable."""
        state = inspect(entity, raiseerr=False)
        if state is None or state.session_id != self.session.hash_key:
            return None
        identifier = self.identifier(entity)
        if any(value is None for value in identifier.values()):
            return None
        return identifier

    def recompute_change_set(self, entity: object) -> None:
        """
        Re-read the entity's columns from the flush's connection.

        Used for entities that survive their own deletion (soft delete), so
        the audit snapshot shows what the database holds after the flush.
        """
        state = inspect(entity)
        if state.key is None:
            return
        self._refresh(entity, state.key[1], [prop.key for prop in state.mapper.column_attrs])

    def _refresh(self, entity: object, primary_key: Tuple[Any, ...], names: List[str]) -> None:
        """Set the named column attributes from the row with the given primary key."""
        mapper = inspect(entity).mapper
        props = [
            mapper.attrs[name] for name in names
            if isinstance(getattr(mapper.attrs[name].columns[0], "table", None), Table)
        ]
        if not props:
            return
        columns = [prop.columns[0] for prop in props]
        criteria = [column == value for column, value in zip(mapper.primary_key, primary_key)]

        statement = select(*columns).select_from(mapper.persist_selectable).where(and_(*criteria))
        row = self.connection().execute(statement).first()
        if row is None:
            logger.debug("%s row is gone, keeping in-memory values", mapper.class_.__name__)
            return
        for prop, value in zip(props, row):
            attributes.set_committed_value(entity, prop.key, value)


def recompute_change_set(context: SessionContext, entity: object) -> None:
    """Default hook for entities that remain managed after deletion."""
    context.recompute_change_set(entity)
