"""
Typed failures raised by the service layer.

The workflow code raises these and never swallows them; the HTTP boundary
maps each kind to a status code (see `register_error_handlers`).
"""
from __future__ import annotations

from flask import Flask, current_app, jsonify


class PdmsError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(PdmsError):
    """Referenced document, version, draft, merge request or report does not exist."""

    status_code = 404


class ValidationError(PdmsError):
    """Malformed input, e.g. a base version that belongs to another document."""

    status_code = 400


class ConflictError(PdmsError):
    """Operation would break a uniqueness or state invariant."""

    status_code = 409


class AuthorizationError(PdmsError):
    """Actor lacks permission, or a state-machine precondition was violated."""

    status_code = 403


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PdmsError)
    def _pdms_error(e: PdmsError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            current_app.logger.exception("Unhandled service error: %s", e.message)
        body: dict[str, object] = {"ok": False, "error": e.message}
        if e.details:
            body["details"] = e.details
        return jsonify(body), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": "File too large."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        from flask import g

        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"ok": False, "error": "Internal server error"}), 500
