from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from flask import Flask, current_app, g, jsonify, request, session

from .scope_engine import RequestContext, ScopeRegistry, ScopeTypeMismatchError, apply_scopes

_PARAM_KEY = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])+)$")
_PARAM_SEGMENT = re.compile(r"\[([^\[\]]*)\]")
_EMPTY_SCOPES: Mapping[str, Any] = MappingProxyType({})


def parse_nested_params(source: Any) -> dict[str, Any]:
    """Expand bracketed query keys into nested values.

    ``paginate[page]=1`` becomes ``{"paginate": {"page": "1"}}`` and
    ``categories[]=a&categories[]=b`` becomes ``{"categories": ["a", "b"]}``.
    Repeated plain keys keep their last value.
    """
    params: dict[str, Any] = {}
    for raw_key in source.keys():
        values = source.getlist(raw_key) if hasattr(source, "getlist") else [source[raw_key]]
        match = _PARAM_KEY.match(raw_key)
        if match is None:
            params[raw_key] = values[-1]
            continue

        head, tail = match.groups()
        segments = [head, *_PARAM_SEGMENT.findall(tail)]
        as_list = segments[-1] == ""
        if as_list:
            segments.pop()
        if "" in segments:
            params[raw_key] = values[-1]
            continue

        node = params
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = node[segment] = {}
            node = child
        node[segments[-1]] = list(values) if as_list else values[-1]
    return params


def build_request_context(
    params: Mapping[str, Any] | None = None,
    predicates: Mapping[str, Callable[[RequestContext], Any]] | None = None,
    defaults: Mapping[str, Callable[[RequestContext], Any]] | None = None,
) -> RequestContext:
    if params is None:
        params = {**parse_nested_params(request.form), **parse_nested_params(request.args)}
    endpoint = request.endpoint or ""
    return RequestContext(
        action=endpoint.rsplit(".", 1)[-1] or None,
        params=params,
        session=dict(session),
        caller=current_app,
        predicates=predicates or {},
        defaults=defaults or {},
    )


def apply_request_scopes(
    registry: ScopeRegistry,
    collection: Any,
    *,
    fallback_defaults: Mapping[str, Any] | None = None,
    params: Mapping[str, Any] | None = None,
    predicates: Mapping[str, Callable[[RequestContext], Any]] | None = None,
    defaults: Mapping[str, Callable[[RequestContext], Any]] | None = None,
) -> Any:
    context = build_request_context(params=params, predicates=predicates, defaults=defaults)
    application = apply_scopes(registry, context, collection, fallback_defaults=fallback_defaults)
    g.current_scopes = application.current_scopes
    g.scope_steps = application.steps
    return application.collection


def current_scopes() -> Mapping[str, Any]:
    return g.get("current_scopes", _EMPTY_SCOPES)


def register_scope_error_handlers(app: Flask) -> None:
    @app.errorhandler(ScopeTypeMismatchError)
    def handle_scope_type_mismatch(error: ScopeTypeMismatchError) -> Any:
        app.logger.warning(
            "scope_type_mismatch",
            extra={"path": request.path, "method": request.method, "scope": error.scope, "expected": error.expected},
        )
        return jsonify({"error": str(error), "scope": error.scope}), 400
