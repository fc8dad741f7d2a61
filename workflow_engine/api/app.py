"""
Flask application factory.

Creates and configures the Flask application with the workflow engine,
error handlers and health endpoints.
"""

import logging
import math
import signal
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from workflow_engine.config import Config, get_config
from workflow_engine.domain import (
    CircuitOpenError,
    EngineError,
    InvalidStateError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from workflow_engine.services import WorkflowEngine, WorkflowService, create_engine

logger = logging.getLogger(__name__)


def create_app(config: Optional[Config] = None, engine: Optional[WorkflowEngine] = None) -> Flask:
    """
    Application factory for creating Flask app.

    Args:
        config: Optional configuration object
        engine: Optional engine; built from config and initialized if omitted

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Enable CORS for all routes
    CORS(app)

    # Load configuration
    app_config = config or get_config()
    app.config["SECRET_KEY"] = app_config.SECRET_KEY
    app.config["DEBUG"] = app_config.FLASK_DEBUG
    app.config["APP_CONFIG"] = app_config

    if engine is None:
        engine = create_engine(app_config)
        engine.initialize(start_consumers=True)

    app.config["ENGINE"] = engine
    app.config["WORKFLOW_SERVICE"] = WorkflowService(engine.store, engine)

    # Register error handlers
    register_error_handlers(app)

    # Register routes
    from .routes import register_routes
    register_routes(app)

    @app.route("/health")
    def health_check():
        """Liveness: store and queue reachable, engine accepting work."""
        engine = app.config["ENGINE"]
        checks = _dependency_checks(engine)
        healthy = all(checks.values()) and engine.accepting_work

        return jsonify({
            "status": "healthy" if healthy else "unhealthy",
            "service": "workflow-engine",
            "database": "healthy" if checks["database"] else "unhealthy",
            "redis": "healthy" if checks["redis"] else "unhealthy",
            "accepting_work": engine.accepting_work,
        }), 200 if healthy else 503

    @app.route("/health/detailed")
    def detailed_health_check():
        """Readiness: dependency pings plus queue depth, breakers and health stats."""
        engine = app.config["ENGINE"]
        checks = _dependency_checks(engine)
        healthy = all(checks.values()) and engine.accepting_work

        return jsonify({
            "status": "healthy" if healthy else "unhealthy",
            "service": "workflow-engine",
            "checks": {name: "healthy" if ok else "unhealthy" for name, ok in checks.items()},
            "engine": engine.get_status(),
        }), 200 if healthy else 503

    logger.info("Flask application created")
    return app


def _dependency_checks(engine: WorkflowEngine) -> dict:
    return {
        "database": engine.store.health_check(),
        "redis": engine.queues.health_check(),
    }


def _error(code: int, name: str, message: str, **extra):
    body = {"code": code, "name": name, "message": message}
    body.update(extra)
    return jsonify({"error": body}), code


def register_error_handlers(app: Flask) -> None:
    """Map the engine's error taxonomy and HTTP errors to JSON responses."""

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        """Handle HTTP exceptions."""
        return _error(e.code, e.name, e.description)

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        return _error(400, "Bad Request", str(e), details=e.errors)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e: NotFoundError):
        return _error(404, "Not Found", str(e))

    @app.errorhandler(InvalidStateError)
    def handle_invalid_state(e: InvalidStateError):
        return _error(409, "Conflict", str(e))

    @app.errorhandler(ServiceUnavailableError)
    def handle_unavailable(e: ServiceUnavailableError):
        response, code = _error(503, "Service Unavailable", str(e))
        if isinstance(e, CircuitOpenError) and e.retry_after is not None:
            response.headers["Retry-After"] = str(max(1, math.ceil(e.retry_after)))
        return response, code

    @app.errorhandler(EngineError)
    def handle_engine_error(e: EngineError):
        logger.error(f"Engine error: {e}")
        return _error(500, "Internal Server Error", str(e))

    @app.errorhandler(ValueError)
    def handle_value_error(e: ValueError):
        """Handle validation errors."""
        return _error(400, "Bad Request", str(e))

    @app.errorhandler(Exception)
    def handle_generic_exception(e: Exception):
        """Handle unexpected errors."""
        logger.exception(f"Unhandled exception: {e}")
        return _error(500, "Internal Server Error", "An unexpected error occurred")


def run_server() -> None:
    """Entry point: HTTP API plus the engine and its queue consumers in one process."""
    config = get_config()
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    app = create_app(config)
    engine = app.config["ENGINE"]

    def handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        engine.shutdown()
        engine.store.close()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)

    logger.info(f"Workflow service listening on port {config.API_PORT}")
    app.run(host="0.0.0.0", port=config.API_PORT, debug=config.FLASK_DEBUG, use_reloader=False)


if __name__ == "__main__":
    run_server()
