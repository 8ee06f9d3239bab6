"""Storage sink - executes revision and audit inserts on the flush's connection."""
import logging
from typing import Any, Mapping

from sqlalchemy import Table
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from entity_audit.errors import MappingError, StorageError
from entity_audit.models.audit import AuditSchema
from entity_audit.services.encoder import AuditRow

logger = logging.getLogger(__name__)


class AuditStorage:
    """
    Writes inside the caller's active transaction.

    Errors are re-raised as StorageError; the flush that triggered the write
    fails and its transaction rolls back together with the audit rows.
    """

    def __init__(self, connection: Connection, schema: AuditSchema):
        self.connection = connection
        self.schema = schema
        self._tables = {table.name: table for table in schema.metadata.tables.values()}

    def insert(self, table: Table, values: Mapping[str, Any]) -> Any:
        """Insert one row and return its generated primary key."""
        try:
            result = self.connection.execute(table.insert(), dict(values))
        except SQLAlchemyError as exc:
            raise StorageError(f"Insert into '{table.name}' failed: {exc}") from exc
        return result.inserted_primary_key[0]

    def execute(self, statement, params: Mapping[str, Any]) -> int:
        """Execute a parameterized statement and return the affected row count."""
        try:
            result = self.connection.execute(statement, dict(params))
        except SQLAlchemyError as exc:
            raise StorageError(f"Audit statement failed: {exc}") from exc
        return result.rowcount

    def write(self, row: AuditRow) -> int:
        table = self._tables.get(row.table)
        if table is None:
            raise MappingError(f"Audit table '{row.table}' is not registered")
        logger.debug("Writing %s row for %s", row.table, row.entity_class.__name__)
        return self.execute(table.insert(), row.as_dict())
