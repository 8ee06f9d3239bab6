"""
Tests for the read-only history API.
"""
import pytest
import uvicorn
from fastapi.testclient import TestClient

from entity_audit.database import make_session_factory
from entity_audit.main import create_app, serve
from sample_models import ArticleTag, Order


@pytest.fixture
def client(engine, audit_manager):
    """API reading through its own sessions on the test engine."""
    return TestClient(create_app(audit_manager, make_session_factory(engine)))


@pytest.fixture
def order(db_session):
    order = Order(id=42, total=100)
    db_session.add(order)
    db_session.commit()
    order.total = 150
    db_session.commit()
    return order


class TestRevisionEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_list_revisions(self, client, order):
        response = client.get("/api/revisions")

        assert response.status_code == 200
        body = response.json()
        assert [r["id"] for r in body] == [2, 1]
        assert body[0]["username"] == "alice"

    def test_get_revision(self, client, order):
        assert client.get("/api/revisions/1").json()["id"] == 1
        assert client.get("/api/revisions/9").status_code == 404

    def test_revision_changes(self, client, order):
        response = client.get("/api/revisions/2/changes")

        assert response.status_code == 200
        body = response.json()
        assert len(body) == 1
        assert body[0]["entity_name"] == "Order"
        assert body[0]["revision_type"] == "UPD"
        assert body[0]["data"]["total"] == 150


class TestEntityEndpoints:
    def test_entity_revisions(self, client, order):
        response = client.get("/api/entities/Order/42/revisions")
        assert [r["id"] for r in response.json()] == [2, 1]

    def test_entity_history(self, client, order):
        body = client.get("/api/entities/Order/42/history").json()
        assert [s["revision_type"] for s in body] == ["UPD", "INS"]
        assert body[1]["data"]["total"] == 100

    def test_entity_at_revision(self, client, order):
        response = client.get("/api/entities/Order/42/revisions/1")

        assert response.status_code == 200
        assert response.json()["identifier"] == {"id": 42}
        assert response.json()["data"]["discriminator"] == "order"

    def test_composite_identifier_in_path(self, client, db_session, sample_article):
        article_id = sample_article.id
        db_session.add(ArticleTag(article=sample_article, tag="python", weight=3))
        db_session.commit()

        response = client.get(f"/api/entities/ArticleTag/{article_id},python/revisions/2")
        assert response.status_code == 200
        assert response.json()["data"]["weight"] == 3

    def test_unknown_entity(self, client):
        assert client.get("/api/entities/Setting/1/revisions").status_code == 404

    def test_bad_identifier(self, client, order):
        assert client.get("/api/entities/Order/abc/revisions").status_code == 400
        assert client.get("/api/entities/Order/1,2/revisions").status_code == 400

    def test_entity_missing_at_revision(self, client, order):
        assert client.get("/api/entities/Order/7/revisions/2").status_code == 404


def test_serve_runs_uvicorn(monkeypatch, engine, audit_manager):
    session_factory = make_session_factory(engine)
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, host, port: calls.append((app, host, port)))

    serve(audit_manager, session_factory, port=9000)

    app, host, port = calls[0]
    assert app.state.audit_manager is audit_manager
    assert app.state.session_factory is session_factory
    assert (host, port) == ("0.0.0.0", 9000)
