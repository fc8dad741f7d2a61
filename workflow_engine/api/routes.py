"""
API routes for the workflow execution engine.

Maps REST endpoints onto engine and workflow service operations. Errors
raised by those operations are turned into responses by the app's error
handlers.
"""

import logging
from typing import Optional
from uuid import UUID

from flask import Blueprint, Flask, current_app, jsonify, request

from workflow_engine.domain import ExecutionStatus, ValidationError
from workflow_engine.services import WorkflowEngine, WorkflowService

logger = logging.getLogger(__name__)

# Create blueprints
workflows_bp = Blueprint("workflows", __name__, url_prefix="/api/workflows")
executions_bp = Blueprint("executions", __name__, url_prefix="/api/executions")


def get_engine() -> WorkflowEngine:
    """Get the engine from Flask app config."""
    return current_app.config["ENGINE"]


def get_workflow_service() -> WorkflowService:
    """Get the workflow service from Flask app config."""
    return current_app.config["WORKFLOW_SERVICE"]


def _uuid(value: str, kind: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {kind} ID", [f"'{value}' is not a valid UUID"])


def _int_arg(name: str, default: int, minimum: int = 0, maximum: Optional[int] = None) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name}", [f"{name} must be an integer"])
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(f"Invalid {name}", [f"{name} is out of range"])
    return value


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body required", ["body must be a JSON object"])
    return data


# ============================================
# WORKFLOW ENDPOINTS
# ============================================

@workflows_bp.route("", methods=["POST"])
def create_workflow():
    """
    Create a new workflow definition.

    Request body:
    {
        "name": "daily_content",
        "description": "Workflow description",
        "steps": [{"type": "fetch_news", "config": {}}],
        "tags": ["content"],
        "enabled": true
    }

    Response: 201 Created
    """
    data = _json_body()
    workflow = get_workflow_service().create_workflow(
        data, created_by=data.get("created_by") or "api"
    )
    return jsonify({"workflow": workflow.to_dict()}), 201


@workflows_bp.route("", methods=["GET"])
def list_workflows():
    """
    List workflows.

    Query params:
    - enabled: true | false
    - limit: Max results (default 100)
    - offset: Pagination offset (default 0)

    Response: 200 OK
    """
    enabled_arg = request.args.get("enabled")
    enabled = None if enabled_arg is None else enabled_arg.lower() == "true"
    limit = _int_arg("limit", 100, minimum=1, maximum=1000)
    offset = _int_arg("offset", 0)

    workflows = get_workflow_service().list_workflows(enabled=enabled, limit=limit, offset=offset)

    return jsonify({
        "workflows": [w.to_dict() for w in workflows],
        "count": len(workflows),
        "limit": limit,
        "offset": offset,
    }), 200


@workflows_bp.route("/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id: str):
    """Get a workflow by ID."""
    workflow = get_workflow_service().get_workflow(_uuid(workflow_id, "workflow"))
    return jsonify({"workflow": workflow.to_dict()}), 200


@workflows_bp.route("/<workflow_id>", methods=["PUT"])
def update_workflow(workflow_id: str):
    """Update a workflow definition; bumps its version."""
    workflow = get_workflow_service().update_workflow(
        _uuid(workflow_id, "workflow"), _json_body()
    )
    return jsonify({"workflow": workflow.to_dict()}), 200


@workflows_bp.route("/<workflow_id>", methods=["DELETE"])
def delete_workflow(workflow_id: str):
    """Delete a workflow with no executions in flight."""
    get_workflow_service().delete_workflow(_uuid(workflow_id, "workflow"))
    return jsonify({"deleted": True, "id": workflow_id}), 200


@workflows_bp.route("/<workflow_id>/execute", methods=["POST"])
def execute_workflow(workflow_id: str):
    """
    Start an execution of a workflow.

    Request body:
    {
        "input": {},
        "priority": 5
    }

    Response: 202 Accepted
    """
    data = request.get_json(silent=True) or {}
    workflow = get_workflow_service().get_workflow(_uuid(workflow_id, "workflow"))

    execution = get_engine().execute_workflow(workflow, {
        "input": data.get("input") or {},
        "priority": data.get("priority", current_app.config["APP_CONFIG"].DEFAULT_PRIORITY),
        "started_by": data.get("started_by") or "api",
    })

    return jsonify({
        "execution_id": str(execution.id),
        "status": execution.status.value,
        "started_at": execution.started_at.isoformat(),
    }), 202


# ============================================
# EXECUTION ENDPOINTS
# ============================================

@executions_bp.route("", methods=["GET"])
def list_executions():
    """
    List executions with optional filters.

    Query params:
    - workflow_id: Filter by workflow ID
    - status: Filter by status
    - limit: Max results (default 100)
    - offset: Pagination offset (default 0)

    Response: 200 OK
    """
    workflow_id = request.args.get("workflow_id")
    status = request.args.get("status")
    limit = _int_arg("limit", 100, minimum=1, maximum=1000)
    offset = _int_arg("offset", 0)

    try:
        status_enum = ExecutionStatus(status) if status else None
    except ValueError:
        raise ValidationError("Invalid status", [f"unknown status '{status}'"])

    executions = get_engine().list_executions(
        workflow_id=_uuid(workflow_id, "workflow") if workflow_id else None,
        status=status_enum,
        limit=limit,
        offset=offset,
    )

    return jsonify({
        "executions": [e.to_dict() for e in executions],
        "count": len(executions),
        "limit": limit,
        "offset": offset,
    }), 200


@executions_bp.route("/<execution_id>", methods=["GET"])
def get_execution(execution_id: str):
    """Get execution status and details."""
    execution = get_engine().get_execution(_uuid(execution_id, "execution"))
    return jsonify({"execution": execution.to_dict()}), 200


@executions_bp.route("/<execution_id>/cancel", methods=["POST"])
def cancel_execution(execution_id: str):
    """Cancel a pending, queued or running execution."""
    data = request.get_json(silent=True) or {}
    execution = get_engine().cancel_execution(
        _uuid(execution_id, "execution"),
        cancelled_by=data.get("cancelled_by") or "api",
    )
    return jsonify({"execution": execution.to_dict()}), 200


@executions_bp.route("/<execution_id>/retry", methods=["POST"])
def retry_execution(execution_id: str):
    """
    Retry a failed or cancelled execution as a new execution.

    Response: 202 Accepted
    """
    data = request.get_json(silent=True) or {}
    execution = get_engine().retry_execution(
        _uuid(execution_id, "execution"),
        started_by=data.get("started_by") or "api",
    )
    return jsonify({
        "execution_id": str(execution.id),
        "retry_of": execution_id,
        "retry_count": execution.retry_count,
        "status": execution.status.value,
        "started_at": execution.started_at.isoformat(),
    }), 202


@executions_bp.route("/<execution_id>/logs", methods=["GET"])
def get_execution_logs(execution_id: str):
    """
    Get logs for an execution, oldest first.

    Query params:
    - level: debug | info | warn | error
    - step: zero-based step index
    - limit: Newest entries to return (default 100)

    Response: 200 OK
    """
    step_arg = request.args.get("step")
    step = _int_arg("step", 0) if step_arg is not None else None
    limit = _int_arg("limit", 100, minimum=1, maximum=1000)

    logs = get_engine().get_execution_logs(
        _uuid(execution_id, "execution"),
        level=request.args.get("level"),
        step=step,
        limit=limit,
    )

    return jsonify({
        "logs": [log.to_dict() for log in logs],
        "count": len(logs),
    }), 200


# ============================================
# ROUTE REGISTRATION
# ============================================

def register_routes(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    app.register_blueprint(workflows_bp)
    app.register_blueprint(executions_bp)
    logger.info("Routes registered")
