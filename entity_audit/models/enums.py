"""Enums for the audit engine - operation kinds, inheritance strategies and pipeline states."""
from enum import Enum


class RevisionType(str, Enum):
    """Operation kind stored with every audit row."""
    INSERT = "INS"
    UPDATE = "UPD"
    DELETE = "DEL"


class InheritanceKind(str, Enum):
    """How a mapped class hierarchy is laid out in tables."""
    NONE = "none"
    SINGLE_TABLE = "single-table"
    JOINED = "joined"


class FlushState(str, Enum):
    """States of the flush pipeline. A cycle always ends back in Idle."""
    IDLE = "Idle"
    COLLECTING = "Collecting"
    ENCODING = "Encoding"


class ColumnSource(str, Enum):
    """Where the value of one audit column comes from."""
    REVISION = "revision"
    REVISION_TYPE = "revision_type"
    ASSOCIATION = "association"
    FIELD = "field"
    DISCRIMINATOR = "discriminator"
