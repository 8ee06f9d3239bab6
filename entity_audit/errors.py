"""Exceptions raised by the audit engine."""


class AuditError(Exception):
    """Base class for every audit failure."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class MappingError(AuditError):
    """
    Mapper metadata is inconsistent or incomplete for an audited class.

    Fatal: raised during a flush it aborts the whole write.
    """


class UnresolvedAssociationError(MappingError):
    """An identifier column backed by an association could not be resolved."""

    def __init__(self, entity_class: type, association: str, column: str):
        self.entity_class = entity_class
        self.association = association
        self.column = column
        super().__init__(
            f"Cannot resolve identifier column '{column}' of {entity_class.__name__} "
            f"through association '{association}'"
        )


class StorageError(AuditError):
    """The database rejected a revision or audit row insert."""


class NotAuditedError(AuditError):
    """The requested class is not tracked by the audit manager."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Class '{name}' is not audited")


class NoRevisionFoundError(AuditError):
    """No audit data exists for the requested entity or revision."""
