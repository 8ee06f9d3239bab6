"""Audit configuration - table naming, ignored columns and the current user."""
from typing import Annotated, Any, Callable, FrozenSet, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class AuditConfiguration(BaseSettings):
    """
    Externally supplied values consumed by the audit engine.

    Audit tables are named ``<table_prefix><entity table><table_suffix>``.
    Fields listed in ``global_ignore_columns`` never count as a change on
    their own: an update touching only those fields is not audited.

    Every field can be set from an ``ENTITY_AUDIT_<FIELD>`` environment
    variable; keyword arguments win over the environment. Ignored columns are
    given as a comma separated list.
    """
    model_config = SettingsConfigDict(
        env_prefix="ENTITY_AUDIT_",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    table_prefix: str = ""
    table_suffix: str = "_audit"
    revision_table_name: str = "revisions"
    revision_field_name: str = "revision_id"
    revision_type_field_name: str = "revision_type"
    global_ignore_columns: Annotated[FrozenSet[str], NoDecode] = frozenset()

    # Called once per revision; falls back to default_username when unset
    username_callable: Optional[Callable[[], Optional[str]]] = None
    default_username: Optional[str] = None

    @field_validator("revision_table_name", "revision_field_name", "revision_type_field_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("global_ignore_columns", mode="before")
    @classmethod
    def _split_columns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return frozenset(name.strip() for name in value.split(",") if name.strip())
        return value

    def table_name(self, entity_table: str) -> str:
        """Audit table name for an entity table."""
        return f"{self.table_prefix}{entity_table}{self.table_suffix}"

    def current_username(self) -> Optional[str]:
        if self.username_callable is not None:
            return self.username_callable()
        return self.default_username
