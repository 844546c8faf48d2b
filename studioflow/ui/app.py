#!/usr/bin/env python3
"""Flask host screen for the contract completion workflow.

This module exposes the workflow orchestrator to a browser:
- JSON endpoints for every user action (edit, create, send, resend, complete)
- Server-Sent Events for the contract-sent / contract-updated / complete hooks
- Simulation endpoints for the customer signing and payment when the
  in-process backend is in use
"""

from __future__ import annotations

import base64
import binascii
import json
import queue
from typing import Any, Dict, Generator, Optional

from flask import Flask, Response, current_app, jsonify, request

from studioflow.clients.contract_service import ContractService, IncompleteResponseError, RemoteError
from studioflow.clients.local_backend import LocalContractBackend
from studioflow.orchestrator.draft_store import DraftStore
from studioflow.orchestrator.lifecycle import (
    GateNotSatisfiedError,
    InvalidTransitionError,
    ValidationError,
)
from studioflow.orchestrator.models import Contract
from studioflow.orchestrator.workflow import WorkflowOrchestrator
from studioflow.utils.dates import to_iso, utcnow


def _emit(events: "queue.Queue[Dict[str, Any]]", event_type: str, data: Dict[str, Any]) -> None:
    """Emit an event to connected SSE clients."""
    events.put(
        {
            "type": event_type,
            "data": data,
            "timestamp": to_iso(utcnow()),
        }
    )


def create_app(
    service: ContractService,
    store: DraftStore,
    workflow: Optional[WorkflowOrchestrator] = None,
) -> Flask:
    """Build the Flask app around one workflow instance."""

    app = Flask(__name__)
    events: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    def contract_hook(event_type: str):
        def hook(contract: Contract) -> None:
            _emit(events, event_type, contract.to_api())

        return hook

    if workflow is None:
        workflow = WorkflowOrchestrator(service, store)
    workflow.on_contract_sent = contract_hook("contract_sent")
    workflow.on_contract_update = contract_hook("contract_updated")
    workflow.on_complete = contract_hook("complete")
    workflow.on_back_to_packages = lambda: _emit(events, "navigate", {"target": "packages"})
    workflow.on_back_to_photos = lambda: _emit(events, "navigate", {"target": "photos"})

    app.extensions["studioflow"] = {
        "service": service,
        "store": store,
        "workflow": workflow,
        "events": events,
    }

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _workflow() -> WorkflowOrchestrator:
    return current_app.extensions["studioflow"]["workflow"]


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _state(status: int = 200):
    return jsonify(_workflow().snapshot()), status


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        return jsonify({"error": str(e), "missing": e.missing}), 400

    @app.errorhandler(GateNotSatisfiedError)
    def handle_gate(e: GateNotSatisfiedError):
        return jsonify({"error": str(e), "reasons": e.reasons}), 409

    @app.errorhandler(InvalidTransitionError)
    def handle_transition(e: InvalidTransitionError):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(RemoteError)
    def handle_remote(e: RemoteError):
        return jsonify({"error": e.message, "retryable": True}), 502

    @app.errorhandler(IncompleteResponseError)
    def handle_incomplete(e: IncompleteResponseError):
        return jsonify({"error": str(e), "missing": e.missing, "state": _workflow().snapshot()}), 502


def _register_routes(app: Flask) -> None:
    @app.route("/api/state")
    def get_state():
        """Get current workflow state."""
        return _state()

    @app.route("/api/workflow/open", methods=["POST"])
    def open_workflow():
        body = _body()
        lead = body.get("lead")
        if not isinstance(lead, dict) or lead.get("id") is None:
            return jsonify({"error": "lead with an id is required"}), 400
        _workflow().open(
            lead,
            package=body.get("package"),
            invoice=body.get("invoice"),
            selected_photo_ids=body.get("selectedPhotoIds"),
        )
        return _state()

    @app.route("/api/workflow/resume", methods=["POST"])
    def resume():
        _workflow().resume()
        return _state()

    @app.route("/api/workflow/discard", methods=["POST"])
    def discard():
        _workflow().discard()
        return _state()

    @app.route("/api/workflow/fields", methods=["PATCH"])
    def update_field():
        body = _body()
        group, name = body.get("group"), body.get("name")
        if not group or not name:
            return jsonify({"error": "group and name are required"}), 400
        try:
            if (group, name) == ("payment", "subtotal"):
                _workflow().update_subtotal(body.get("value"))
            else:
                _workflow().update_field(group, name, body.get("value"))
        except KeyError as e:
            return jsonify({"error": str(e.args[0]) if e.args else "Unknown field"}), 400
        return _state()

    @app.route("/api/workflow/review", methods=["POST"])
    def go_to_review():
        _workflow().go_to_review()
        return _state()

    @app.route("/api/workflow/edit", methods=["POST"])
    def back_to_edit():
        _workflow().back_to_edit()
        return _state()

    @app.route("/api/workflow/contract", methods=["POST"])
    def create_contract():
        _workflow().create_contract()
        return _state(201)

    @app.route("/api/workflow/send", methods=["POST"])
    def send_contract():
        _workflow().send_contract(_body().get("email"))
        return _state()

    @app.route("/api/workflow/refresh", methods=["POST"])
    def refresh():
        _workflow().refresh()
        return _state()

    @app.route("/api/workflow/signature", methods=["POST"])
    def capture_signature():
        raw = _body().get("signatureData") or ""
        if "," in raw:
            raw = raw.split(",", 1)[1]  # data URL prefix
        try:
            data = base64.b64decode(raw, validate=True) if raw else b""
        except (binascii.Error, ValueError):
            return jsonify({"error": "signatureData must be base64"}), 400
        captured = _workflow().capture_signature(lambda: data or None)
        state = _workflow().snapshot()
        state["captured"] = captured
        return jsonify(state)

    @app.route("/api/workflow/resend-delivery", methods=["POST"])
    def resend_delivery():
        result = _workflow().resend_delivery(_body().get("email"))
        state = _workflow().snapshot()
        state["resend"] = {
            "sentTo": result.sent_to,
            "attachments": result.attachments,
            "photoCount": result.photo_count,
        }
        return jsonify(state)

    @app.route("/api/workflow/auth-code", methods=["PATCH"])
    def save_auth_code():
        _workflow().save_auth_code(str(_body().get("authCode") or ""))
        return _state()

    @app.route("/api/workflow/complete", methods=["POST"])
    def complete():
        _workflow().complete()
        return _state()

    @app.route("/api/workflow/close", methods=["POST"])
    def close():
        _workflow().close()
        return _state()

    @app.route("/api/workflow/back", methods=["POST"])
    def back():
        target = _body().get("target")
        if target == "packages":
            _workflow().back_to_packages()
        elif target == "photos":
            _workflow().back_to_photos()
        else:
            return jsonify({"error": "target must be 'packages' or 'photos'"}), 400
        return _state()

    @app.route("/api/simulate/sign", methods=["POST"])
    def simulate_sign():
        backend = _local_backend()
        contract_id = _workflow().lifecycle.contract_id if _workflow().lifecycle else None
        if backend is None or contract_id is None:
            return jsonify({"error": "Signing simulation needs the local backend and a contract"}), 400
        backend.sign(contract_id)
        return jsonify(backend.get(contract_id).to_api())

    @app.route("/api/simulate/payment", methods=["POST"])
    def simulate_payment():
        backend = _local_backend()
        contract_id = _workflow().lifecycle.contract_id if _workflow().lifecycle else None
        if backend is None or contract_id is None:
            return jsonify({"error": "Payment simulation needs the local backend and a contract"}), 400
        contract = backend.record_payment(contract_id, _body().get("status") or "paid")
        return jsonify(contract.to_api())

    @app.route("/api/events")
    def events():
        """Server-Sent Events endpoint for real-time updates."""
        event_queue = current_app.extensions["studioflow"]["events"]

        def generate() -> Generator[str, None, None]:
            yield f"data: {json.dumps({'type': 'connected'})}\n\n"

            while True:
                try:
                    event = event_queue.get(timeout=30)
                    yield f"data: {json.dumps(event)}\n\n"
                except queue.Empty:
                    # keepalive
                    yield f"data: {json.dumps({'type': 'ping'})}\n\n"

        return Response(generate(), mimetype="text/event-stream")


def _local_backend() -> Optional[LocalContractBackend]:
    service = current_app.extensions["studioflow"]["service"]
    return service if isinstance(service, LocalContractBackend) else None


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False) -> None:
    """Run the Flask server with settings from the environment."""
    from studioflow.config import load_settings
    from studioflow.main import build_service, build_store, build_workflow

    settings = load_settings()
    service = build_service(settings)
    store = build_store(settings)
    app = create_app(service, store, workflow=build_workflow(settings, service, store))
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    run_server(debug=True)
