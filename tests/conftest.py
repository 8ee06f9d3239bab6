"""Pytest configuration and shared fixtures."""
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from entity_audit.config import AuditConfiguration
from entity_audit.manager import AuditManager
from sample_models import (
    Animal,
    Article,
    ArticleTag,
    Author,
    Base,
    Document,
    Dog,
    Order,
    Page,
    PriorityOrder,
)


@pytest.fixture
def engine():
    """Fresh in-memory database for each test, shared by every thread."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def audit_config():
    return AuditConfiguration(
        global_ignore_columns={"updated_at"},
        username_callable=lambda: "alice",
    )


@pytest.fixture
def audit_manager(engine, audit_config):
    manager = AuditManager(audit_config)
    manager.track(Author, Article, ArticleTag, PriorityOrder, Order, Document, Animal, Dog, Page)
    manager.create_schema(engine)
    yield manager
    manager.dispose()


@pytest.fixture
def db_session(engine, audit_manager):
    """Session whose flushes are audited."""
    session = sessionmaker(bind=engine)()
    audit_manager.register(session)
    yield session
    session.close()


@pytest.fixture
def audit_rows(db_session, audit_manager):
    """Return the rows of the audit table holding a class, oldest first."""
    def fetch(entity_class):
        descriptor = audit_manager.describe(entity_class)
        table = audit_manager.schema.audit_table(descriptor)
        revision = table.c[audit_manager.config.revision_field_name]
        return [dict(row) for row in db_session.execute(select(table).order_by(revision)).mappings()]
    return fetch


@pytest.fixture
def revision_rows(db_session, audit_manager):
    def fetch():
        table = audit_manager.schema.revision_table
        return [dict(row) for row in db_session.execute(select(table).order_by(table.c.id)).mappings()]
    return fetch


@pytest.fixture
def sample_article(db_session):
    """Committed article with an author."""
    article = Article(title="Audit trails", author=Author(name="Bea"))
    db_session.add(article)
    db_session.commit()
    return article
