"""Revision allocator - one revision row per flush, created on first use."""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from entity_audit.config import AuditConfiguration
from entity_audit.models.audit import AuditSchema
from entity_audit.services.storage import AuditStorage

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevisionAllocator:
    """
    Hands out the revision id shared by every audit row of a flush.

    Invariants:
    - At most one revision row is written between two resets
    - A flush that writes no audit rows writes no revision either
    """

    def __init__(
        self,
        schema: AuditSchema,
        config: AuditConfiguration,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.schema = schema
        self.config = config
        self.clock = clock
        self.current_revision_id: Optional[Any] = None

    def reset(self) -> None:
        self.current_revision_id = None

    def allocate(self, storage: AuditStorage) -> Any:
        if self.current_revision_id is None:
            username = self.config.current_username()
            self.current_revision_id = storage.insert(
                self.schema.revision_table,
                {"timestamp": self.clock(), "username": username},
            )
            logger.info("Allocated audit revision %s for %s", self.current_revision_id, username)
        return self.current_revision_id
