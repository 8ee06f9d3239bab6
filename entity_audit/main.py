"""FastAPI application exposing the audit history."""
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from entity_audit.api.routes import router
from entity_audit.manager import AuditManager

SessionFactory = Callable[[], Session]


def create_app(manager: AuditManager, session_factory: SessionFactory) -> FastAPI:
    """
    Build the history API for the classes tracked by ``manager``.

    ``session_factory`` must open sessions on the database the audited
    sessions write to.
    """
    app = FastAPI(
        title="Entity Audit - History API",
        description="Read-only access to revisions and the recorded states of audited entities.",
        version="0.1.0"
    )
    app.state.audit_manager = manager
    app.state.session_factory = session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api", tags=["Audit"])

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "Entity Audit"}

    return app


def serve(
    manager: AuditManager,
    session_factory: SessionFactory,
    host: str = "0.0.0.0",
    port: int = 8000,
) -> None:
    """Run the history API with uvicorn."""
    import uvicorn
    uvicorn.run(create_app(manager, session_factory), host=host, port=port)
