"""
Tests for configuration and revision allocation.
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from entity_audit.config import AuditConfiguration
from entity_audit.database import make_engine, normalize_url
from entity_audit.services.revisions import RevisionAllocator


class TestAuditConfiguration:
    def test_defaults(self):
        config = AuditConfiguration()

        assert config.table_name("orders") == "orders_audit"
        assert config.revision_table_name == "revisions"
        assert config.global_ignore_columns == frozenset()
        assert config.current_username() is None

    def test_username_callable_wins(self):
        config = AuditConfiguration(default_username="system", username_callable=lambda: "bob")
        assert config.current_username() == "bob"
        assert AuditConfiguration(default_username="system").current_username() == "system"

    def test_blank_names_rejected(self):
        with pytest.raises(ValidationError):
            AuditConfiguration(revision_field_name=" ")

    def test_configuration_is_frozen(self):
        config = AuditConfiguration()
        with pytest.raises(ValidationError):
            config.table_suffix = "_history"

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("ENTITY_AUDIT_TABLE_PREFIX", "aud_")
        monkeypatch.setenv("ENTITY_AUDIT_TABLE_SUFFIX", "")
        monkeypatch.setenv("ENTITY_AUDIT_GLOBAL_IGNORE_COLUMNS", "updated_at, modified_by,")
        monkeypatch.setenv("ENTITY_AUDIT_DEFAULT_USERNAME", "cron")
        monkeypatch.setenv("ENTITY_AUDIT_REVISION_TABLE_NAME", "env_revisions")

        # Keyword arguments win over the environment
        config = AuditConfiguration(revision_table_name="history")

        assert config.table_name("orders") == "aud_orders"
        assert config.global_ignore_columns == {"updated_at", "modified_by"}
        assert config.current_username() == "cron"
        assert config.revision_table_name == "history"

    def test_normalize_database_url(self):
        assert normalize_url("postgres://u@h/db") == "postgresql://u@h/db"
        assert normalize_url("sqlite:///x.db") == "sqlite:///x.db"

    def test_engine_from_database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./history.db")
        assert make_engine().url.database == "./history.db"


class TestRevisionAllocator:
    class FakeStorage:
        def __init__(self):
            self.inserted = []

        def insert(self, table, values):
            self.inserted.append((table, values))
            return len(self.inserted)

    def test_allocates_once_until_reset(self, audit_manager):
        clock = lambda: datetime(2024, 5, 1, tzinfo=timezone.utc)
        allocator = RevisionAllocator(audit_manager.schema, audit_manager.config, clock=clock)
        storage = self.FakeStorage()

        assert allocator.allocate(storage) == 1
        assert allocator.allocate(storage) == 1
        assert len(storage.inserted) == 1

        table, values = storage.inserted[0]
        assert table is audit_manager.schema.revision_table
        assert values == {"timestamp": datetime(2024, 5, 1, tzinfo=timezone.utc), "username": "alice"}

        allocator.reset()
        assert allocator.current_revision_id is None
        assert allocator.allocate(storage) == 2
