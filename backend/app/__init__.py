"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging for the `backend` logger hierarchy
  3. Initialise extensions (SQLAlchemy, Marshmallow) via init_app()
  4. Register all route blueprints under /api/v1
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Register a custom JSON provider to serialise Decimal as string
     (split percentages are Decimal; money itself is integer minor units)

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before db.create_all() runs. They are not used
  directly here — the import side-effect is sufficient.
"""

from __future__ import annotations

import logging
import traceback
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask.logging import default_handler
from marshmallow import ValidationError as SchemaValidationError

from backend.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Flask's default JSON encoder does not handle Decimal.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("33.33") → "33.33" (not 33.33000000000000184...)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.app.extensions import db, ma
    db.init_app(app)
    ma.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # Import all models so that SQLAlchemy's MetaData is populated.
    with app.app_context():
        from backend.app.models import (  # noqa: F401
            expense,
            group,
            membership,
            settlement,
            split,
            user,
        )

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    """
    Routes every `backend.*` logger (services, unit of work) through Flask's
    default handler at LOG_LEVEL, so service logs land next to app.logger's.
    """
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    backend_logger = logging.getLogger("backend")
    backend_logger.setLevel(level)
    if default_handler not in backend_logger.handlers:
        backend_logger.addHandler(default_handler)
    app.logger.setLevel(level)


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    Blueprint names match the route files in app/routes/.
    """
    from backend.app.routes.balances import balances_bp
    from backend.app.routes.expenses import expenses_bp
    from backend.app.routes.settlements import settlements_bp

    # expenses_bp owns /expenses/... and /splits/preview.
    app.register_blueprint(expenses_bp,    url_prefix="/api/v1")
    # balances_bp owns /groups/:id/balances, /balances/pairwise, /users/:id/balances.
    app.register_blueprint(balances_bp,    url_prefix="/api/v1")
    app.register_blueprint(settlements_bp, url_prefix="/api/v1/settlements")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      InternalConsistencyError → 500 INTERNAL_CONSISTENCY_ERROR, logged CRITICAL
      AppError                 → structured JSON error envelope, its own status
      marshmallow ValidationError → MISSING_FIELD / INVALID_FIELD / registered code (400)
      Exception                → generic INTERNAL_ERROR (500); traceback logged

    Stack traces never leave the server. The traceback is written to the
    app logger only.
    """
    from backend.app.errors import AppError, ErrorCode, InternalConsistencyError

    @app.errorhandler(InternalConsistencyError)
    def handle_consistency_error(error: InternalConsistencyError):
        """
        A ledger invariant failed. This is corrupt data or a bug, never bad
        input, so it is logged at CRITICAL with the request for alerting and
        returned with its own code (distinct from INTERNAL_ERROR).
        """
        app.logger.critical(
            "Ledger invariant violated on %s %s: %s",
            request.method,
            request.path,
            error.message,
        )
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (service, route) into the standard error envelope.

        Routes never catch AppError — they let it propagate here.
        """
        if error.http_status == 409:
            app.logger.warning("Conflict on %s %s: %s", request.method, request.path, error.code)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(SchemaValidationError)
    def handle_validation_error(error: SchemaValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Returns the FIRST error only. If the message is itself a registered
        ErrorCode constant it becomes the code; otherwise INVALID_FIELD (or
        MISSING_FIELD for absent required fields).
        """
        field, raw_message = _first_schema_error(error.messages)

        known_codes = set(vars(ErrorCode).values())
        if raw_message in known_codes:
            code = raw_message
            message = _code_to_message(code)
        elif str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.

        HTTP exceptions raised by Flask itself (404 for unknown routes, 405)
        keep their own status.
        """
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return jsonify({
                "error": {
                    "code": error.name.upper().replace(" ", "_"),
                    "message": error.description,
                }
            }), error.code

        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _first_schema_error(messages) -> tuple[str | None, str]:
    """
    Walks marshmallow's nested messages dict down to the first leaf.
    Nested paths are joined with dots, e.g. "splits.0.amount".
    """
    path: list[str] = []
    node = messages
    while True:
        if isinstance(node, dict) and node:
            key, node = next(iter(node.items()))
            if key != "_schema":
                path.append(str(key))
        elif isinstance(node, list) and node:
            node = node[0]
        else:
            break
    field = ".".join(path) if path else None
    message = str(node) if node not in (None, {}, []) else "Invalid input."
    return field, message


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled when DEBUG or TESTING is true so a frontend served from another
    local port can call the API.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response


def _code_to_message(code: str) -> str:
    """
    Returns a human-readable default message for a known error code.
    Used when a schema ValidationError message IS the error code constant.
    """
    _messages = {
        "INVALID_AMOUNT": "Amount must be a positive integer number of minor units.",
        "INVALID_CURRENCY": "Currency must be a three-letter code.",
        "INVALID_SPLIT_METHOD": "split_method must be 'equal', 'percentage' or 'exact'.",
        "INVALID_STATUS": "status must be 'pending' or 'completed'.",
        "DUPLICATE_SPLIT_USER": "The same user_id appears more than once.",
        "NO_PARTICIPANTS": "At least one participant is required.",
    }
    return _messages.get(code, "Invalid input.")
