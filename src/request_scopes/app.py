from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, abort, jsonify, request, session
from werkzeug.exceptions import BadRequest, HTTPException

from .db import InvalidQueryError, TreeQuery, init_db
from .flask_scopes import apply_request_scopes, current_scopes, register_scope_error_handlers
from .scope_engine import CallbackRef, RequestContext, ScopeRegistry, load_scope_config

DEFAULT_LISTING = {"order_by": "name"}


def build_tree_scopes() -> ScopeRegistry:
    registry = ScopeRegistry()
    registry.has_scope("color", unless="show_all_colors")
    registry.has_scope("only_tall", value_type="boolean", only="index")
    registry.has_scope("min_height", default=CallbackRef("preferred_min_height"), only="count")
    registry.has_scope("root_type", as_="root", allow_blank=True)
    registry.has_scope("categories", value_type="array")
    registry.has_scope("order_by", except_="count")
    registry.has_scope("paginate", value_type="hash", using=("page", "per_page"), only="index")
    return registry


def _show_all_colors(context: RequestContext) -> bool:
    return bool(context.session.get("show_all_colors", False))


def _preferred_min_height(context: RequestContext) -> int:
    return int(context.session.get("min_height", 0))


TREE_PREDICATES = {"show_all_colors": _show_all_colors}
TREE_DEFAULTS = {"preferred_min_height": _preferred_min_height}


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("request_scopes").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _error_response(error: Exception | str, status_code: int) -> Any:
    return jsonify({"error": str(error)}), status_code


def _configure_error_handlers(app: Flask) -> None:
    register_scope_error_handlers(app)

    @app.errorhandler(InvalidQueryError)
    def handle_invalid_query(error: InvalidQueryError) -> Any:
        app.logger.warning("invalid_query", extra={"path": request.path, "query": request.query_string.decode(), "error": str(error)})
        return _error_response(error, 400)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning("http_error", extra={"path": request.path, "status_code": error.code, "error": error.description})
        if not _is_api_request():
            return error
        if isinstance(error, BadRequest) and error.description == BadRequest.description:
            return _error_response("invalid request payload", 400)
        return _error_response(error.description, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        # misconfigured scopes (unknown predicates, missing scope methods) land here
        app.logger.exception("unexpected_error", extra={"path": request.path, "error_type": type(error).__name__})
        if not _is_api_request():
            raise error
        return _error_response("internal server error", 500)


def create_catalog_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "catalog")
    _configure_error_handlers(app)
    app.secret_key = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
    app.config["DATABASE_PATH"] = database_path or os.environ.get("SCOPES_DB_PATH", "./data.db")
    config_path = os.environ.get("SCOPES_CONFIG_PATH")
    app.config["TREE_SCOPES"] = load_scope_config(config_path) if config_path else build_tree_scopes()
    init_db(_db_path(app))

    def _scoped_trees(**options: Any) -> Any:
        return apply_request_scopes(
            app.config["TREE_SCOPES"],
            TreeQuery(str(_db_path(app))),
            predicates=TREE_PREDICATES,
            defaults=TREE_DEFAULTS,
            **options,
        )

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get("/api/trees")
    def index() -> Any:
        trees = _scoped_trees(fallback_defaults=DEFAULT_LISTING).all()
        return jsonify({"trees": trees, "current_scopes": dict(current_scopes())})

    @app.get("/api/trees/count")
    def count() -> Any:
        total = _scoped_trees().count()
        return jsonify({"count": total, "current_scopes": dict(current_scopes())})

    @app.get("/api/trees/<int:tree_id>")
    def show(tree_id: int) -> Any:
        tree = _scoped_trees().find(tree_id)
        if tree is None:
            abort(404)
        return jsonify({"tree": tree, "current_scopes": dict(current_scopes())})

    @app.post("/api/preferences")
    def update_preferences() -> Any:
        body = request.get_json(force=True)
        if not isinstance(body, dict):
            abort(400, description="preferences must be a JSON object")
        if "show_all_colors" in body:
            session["show_all_colors"] = bool(body["show_all_colors"])
        if "min_height" in body:
            if isinstance(body["min_height"], bool) or not isinstance(body["min_height"], int):
                abort(400, description="min_height must be an integer")
            session["min_height"] = body["min_height"]
        app.logger.info("preferences_changed", extra={"keys": sorted(body.keys())})
        return jsonify({key: session[key] for key in ("show_all_colors", "min_height") if key in session})

    return app
