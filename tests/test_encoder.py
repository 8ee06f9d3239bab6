"""
Tests for the row encoder, independent of any flush.
"""
import pytest

from entity_audit.errors import MappingError, UnresolvedAssociationError
from entity_audit.models.enums import RevisionType
from entity_audit.services.dedup import ChangeDeduplicator
from entity_audit.services.descriptors import DescriptorCache
from entity_audit.services.encoder import RowEncoder
from sample_models import Article, ArticleTag, Author, Dog, Order, PriorityOrder


class StubResolver:
    """Resolves only the objects it was given."""

    def __init__(self, known=None):
        self.known = known or {}

    def identifier_in_memory(self, entity):
        return self.known.get(id(entity))


@pytest.fixture
def descriptors(audit_config):
    return DescriptorCache(audit_config)


@pytest.fixture
def encoder(descriptors):
    return RowEncoder(descriptors)


class TestEncode:
    def test_plain_row(self, encoder, descriptors):
        author = Author(name="Bea")
        resolver = StubResolver({id(author): {"id": 3}})
        snapshot = {"id": 1, "title": "Notes", "author": author, "deleted": False}

        rows = encoder.encode(descriptors.describe(Article), RevisionType.INSERT, snapshot, 9, resolver)

        assert len(rows) == 1
        assert rows[0].table == "articles_audit"
        assert rows[0].as_dict() == {
            "revision_id": 9,
            "revision_type": RevisionType.INSERT,
            "author_id": 3,
            "id": 1,
            "title": "Notes",
            "updated_at": None,
            "deleted": False,
        }

    def test_unloaded_association_falls_back_to_foreign_key(self, encoder, descriptors):
        snapshot = {"id": 1, "title": "Notes", "author_id": 4}
        rows = encoder.encode(descriptors.describe(Article), RevisionType.UPDATE, snapshot, 9, StubResolver())
        assert rows[0].as_dict()["author_id"] == 4

    def test_missing_optional_association_stores_null(self, encoder, descriptors):
        snapshot = {"id": 1, "title": "Notes", "author": None}
        rows = encoder.encode(descriptors.describe(Article), RevisionType.INSERT, snapshot, 9, StubResolver())
        assert rows[0].as_dict()["author_id"] is None

    def test_unresolvable_identifier_association(self, encoder, descriptors):
        snapshot = {"tag": "python", "weight": 1, "article": Article(title="Unsaved")}

        with pytest.raises(UnresolvedAssociationError) as exc_info:
            encoder.encode(descriptors.describe(ArticleTag), RevisionType.UPDATE, snapshot, 9, StubResolver())

        assert exc_info.value.association == "article"
        assert isinstance(exc_info.value, MappingError)

    def test_joined_rows_root_first(self, encoder, descriptors):
        snapshot = {"id": 5, "total": 20, "priority": 2, "approver_id": None}

        rows = encoder.encode(
            descriptors.describe(PriorityOrder), RevisionType.DELETE, snapshot, 11, StubResolver()
        )

        assert [row.table for row in rows] == ["document_audit", "order_audit", "priority_order_audit"]
        assert rows[0].as_dict()["discriminator"] == "priority_order"
        assert rows[1].as_dict()["total"] == 20
        assert rows[2].as_dict()["priority"] == 2
        for row in rows:
            assert row.values[0] == ("revision_id", 11)
            assert row.values[1] == ("revision_type", RevisionType.DELETE)

    def test_joined_leaf_discriminator_wins(self, encoder, descriptors):
        """A stale discriminator in the snapshot does not leak into the root row."""
        snapshot = {"id": 5, "total": 20, "discriminator": "document"}
        rows = encoder.encode(descriptors.describe(Order), RevisionType.INSERT, snapshot, 1, StubResolver())
        assert rows[0].as_dict()["discriminator"] == "order"

    def test_single_table_discriminator(self, encoder, descriptors):
        snapshot = {"id": 2, "name": "Rex", "bark": "loud", "kind": "animal"}
        rows = encoder.encode(descriptors.describe(Dog), RevisionType.INSERT, snapshot, 1, StubResolver())
        assert rows[0].columns[-1] == "kind"
        assert rows[0].as_dict()["kind"] == "dog"


class TestChangeDeduplicator:
    def test_hash_contains_class_and_identifier(self):
        key = ChangeDeduplicator.hash(ArticleTag, {"article_id": 1, "tag": "python"})
        assert key == f"{ArticleTag.__module__}.ArticleTag 1 'python'"

    def test_composite_values_do_not_run_together(self):
        first = ChangeDeduplicator.hash(ArticleTag, {"article_id": 1, "tag": "a b"})
        second = ChangeDeduplicator.hash(ArticleTag, {"article_id": "1 a", "tag": "b"})
        assert first != second

    def test_add_reports_duplicates(self):
        dedup = ChangeDeduplicator()
        key = ChangeDeduplicator.hash(Order, {"id": 1})

        assert dedup.add(key)
        assert not dedup.add(key)
        assert key in dedup
        assert len(dedup) == 1

        dedup.clear()
        assert key not in dedup
