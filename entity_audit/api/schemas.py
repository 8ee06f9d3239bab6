"""Pydantic schemas for the history API responses."""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from entity_audit.models.enums import RevisionType


class RevisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    username: Optional[str]


class EntityRevisionResponse(BaseModel):
    """One recorded state of an entity."""
    model_config = ConfigDict(from_attributes=True)

    entity_name: str
    revision: int
    revision_type: RevisionType
    identifier: Dict[str, Any]
    data: Dict[str, Any]

