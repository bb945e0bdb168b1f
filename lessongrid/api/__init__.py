"""REST API definition using Flask-RESTX."""
from __future__ import annotations

from flask import Flask, current_app
from flask_restx import Api

from ..errors import (
    ConflictError,
    DomainError,
    GridSuperseded,
    InvalidDragState,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from .grid import ns as grid_ns
from .health import ns as health_ns
from .placement import ns as placement_ns
from .sessions import ns as sessions_ns
from .templates import ns as templates_ns


STATUS_CODES: dict[type[DomainError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidDragState: 409,
    GridSuperseded: 409,
}


def register_namespaces(api: Api) -> None:
    """Register all API namespaces."""
    api.add_namespace(health_ns, path="/health")
    api.add_namespace(sessions_ns, path="/sessions")
    api.add_namespace(templates_ns, path="/templates")
    api.add_namespace(grid_ns, path="/grid")
    api.add_namespace(placement_ns, path="/placement")


def register_error_handlers(api: Api) -> None:
    @api.errorhandler(DomainError)
    def handle_domain_error(error: DomainError):
        # Nothing of a rejected unit of work may leak into the next one.
        db.session.rollback()
        status = next(
            (code for kind, code in STATUS_CODES.items() if isinstance(error, kind)), 400
        )
        quiet = status == 400 or isinstance(error, GridSuperseded)
        log = current_app.logger.debug if quiet else current_app.logger.info
        log("%s rejected: %s", type(error).__name__, error.message)
        return error.as_payload(), status


def init_api(app: Flask) -> Api:
    prefix = app.config.get("URL_PREFIX", "")
    api = Api(
        app,
        version="0.1.0",
        title="Lessongrid API",
        description="Lesson scheduling grid and session lifecycle",
        prefix=f"{prefix}/api",
        doc=f"{prefix}/api/docs",
    )
    register_error_handlers(api)
    register_namespaces(api)
    return api
