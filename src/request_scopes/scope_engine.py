from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

VALUE_TYPES = ("scalar", "boolean", "hash", "array")
BOOLEAN_STRINGS = {"true": True, "false": False}
SENSITIVE_SCOPE_MARKERS = ("password", "secret", "token", "key", "credential", "auth")
CONFIG_KEYS = {
    "name",
    "as",
    "type",
    "using",
    "if",
    "unless",
    "only",
    "except",
    "always",
    "default",
    "default_callback",
    "allow_blank",
}

logger = logging.getLogger(__name__)


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()
_ABSENT: Any = object()


class ScopeError(ValueError):
    """Base class for scope declaration and application errors."""


class ScopeConfigError(ScopeError):
    """Raised when a scope declaration is malformed."""


class DuplicateScopeError(ScopeError):
    """Raised when two scopes are registered under the same name."""


class UnknownCallbackError(ScopeError):
    """Raised when a predicate or deferred default name cannot be resolved."""


class ScopeTargetError(ScopeError):
    """Raised when the collection exposes no callable for a scope."""


class ScopeTypeMismatchError(ScopeError):
    """Raised when a parameter value does not match the scope's declared type."""

    def __init__(self, scope: str, expected: str, value: Any) -> None:
        self.scope = scope
        self.expected = expected
        self.value = value
        super().__init__(f"scope '{scope}' expected a {expected} value, got {type(value).__name__}")


Predicate = Callable[..., Any] | str


@dataclass(slots=True, frozen=True)
class CallbackRef:
    """Names a deferred default supplied by the request context."""

    name: str


@dataclass(slots=True, frozen=True)
class ScopeDeclaration:
    name: str
    param_key: str | None = None
    value_type: str = "scalar"
    using_keys: tuple[str, ...] = ()
    if_: Predicate | None = None
    unless: Predicate | None = None
    only: frozenset[str] | None = None
    except_: frozenset[str] = frozenset()
    always: bool = False
    default: Any = NO_DEFAULT
    allow_blank: bool = False
    transform: Callable[..., Any] | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ScopeConfigError("scope name cannot be empty")
        if self.value_type not in VALUE_TYPES:
            raise ScopeConfigError(f"scope '{self.name}' has unsupported type: {self.value_type}")
        # option values may arrive as single strings from the builder or config
        object.__setattr__(self, "using_keys", _name_tuple(self.using_keys))
        if self.using_keys and self.value_type != "hash":
            raise ScopeConfigError(f"scope '{self.name}' declares 'using' but is not of type hash")
        if self.only is not None:
            object.__setattr__(self, "only", frozenset(_name_tuple(self.only)))
        object.__setattr__(self, "except_", frozenset(_name_tuple(self.except_)))

    @property
    def key(self) -> str:
        return self.param_key or self.name

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT


@dataclass(slots=True, frozen=True)
class RequestContext:
    action: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    session: Mapping[str, Any] = field(default_factory=dict)
    caller: Any = None
    predicates: Mapping[str, Callable[[RequestContext], Any]] = field(default_factory=dict)
    defaults: Mapping[str, Callable[[RequestContext], Any]] = field(default_factory=dict)

    def with_params(self, params: Mapping[str, Any]) -> RequestContext:
        return replace(self, params=params)

    def check(self, guard: Predicate) -> bool:
        if callable(guard):
            return bool(guard(self))
        predicate = self.predicates.get(guard)
        if predicate is None:
            raise UnknownCallbackError(f"unknown predicate: {guard}")
        return bool(predicate(self))

    def compute_default(self, name: str) -> Any:
        computation = self.defaults.get(name)
        if computation is None:
            raise UnknownCallbackError(f"unknown default computation: {name}")
        return computation(self)


@dataclass(slots=True, frozen=True)
class ResolvedValue:
    recorded: Any
    args: tuple[Any, ...]


@dataclass(slots=True, frozen=True)
class ScopeApplication:
    collection: Any
    current_scopes: Mapping[str, Any]
    steps: list[dict[str, Any]]


@dataclass(slots=True)
class _ApplicationState:
    collection: Any
    applied: dict[str, tuple[str, Any]] = field(default_factory=dict)
    provided: set[str] = field(default_factory=set)
    steps: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class _PlannedScope:
    phase: str
    declaration: ScopeDeclaration
    value: ResolvedValue


class ScopeRegistry:
    """Ordered scope declarations; registration order is application order."""

    def __init__(self, declarations: Iterable[ScopeDeclaration] = ()) -> None:
        self._declarations: dict[str, ScopeDeclaration] = {}
        for declaration in declarations:
            self.register(declaration)

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, Any]]) -> ScopeRegistry:
        registry = cls()
        for entry in entries:
            registry.has_scope(**normalize_scope_entry(entry))
        return registry

    def register(self, declaration: ScopeDeclaration) -> ScopeDeclaration:
        if declaration.name in self._declarations:
            raise DuplicateScopeError(f"scope already registered: {declaration.name}")
        self._declarations[declaration.name] = declaration
        return declaration

    def has_scope(
        self,
        name: str,
        *,
        as_: str | None = None,
        value_type: str = "scalar",
        using: str | Iterable[str] = (),
        if_: Predicate | None = None,
        unless: Predicate | None = None,
        only: str | Iterable[str] | None = None,
        except_: str | Iterable[str] = (),
        always: bool = False,
        default: Any = NO_DEFAULT,
        allow_blank: bool = False,
        transform: Callable[..., Any] | None = None,
    ) -> ScopeDeclaration:
        return self.register(
            ScopeDeclaration(
                name=name,
                param_key=as_,
                value_type=value_type,
                using_keys=using,
                if_=if_,
                unless=unless,
                only=only,
                except_=except_,
                always=always,
                default=default,
                allow_blank=allow_blank,
                transform=transform,
            )
        )

    def all(self) -> tuple[ScopeDeclaration, ...]:
        return tuple(self._declarations.values())

    def get(self, name: str) -> ScopeDeclaration | None:
        return self._declarations.get(name)

    def __iter__(self) -> Iterator[ScopeDeclaration]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._declarations)

    def __contains__(self, name: object) -> bool:
        return name in self._declarations


@dataclass(slots=True)
class ScopeEngine:
    """Applies a registry's scopes to a collection for one request.

    Values for every phase are resolved before any transformation runs, so a
    type mismatch anywhere aborts the request with the collection untouched.
    """

    registry: ScopeRegistry

    def apply(
        self,
        context: RequestContext,
        collection: Any,
        fallback_defaults: Mapping[str, Any] | None = None,
    ) -> ScopeApplication:
        declarations = self.registry.all()
        state = _ApplicationState(collection=collection)
        try:
            skip_reasons = {
                declaration.name: applicability_skip_reason(declaration, context) for declaration in declarations
            }
            plan = self._plan_parameters("parameter", declarations, skip_reasons, context, state)
            planned = {step.declaration.name for step in plan}
            plan.extend(self._plan_defaults(declarations, skip_reasons, planned, context, state))
            if not plan and fallback_defaults:
                plan = self._plan_parameters(
                    "fallback",
                    declarations,
                    skip_reasons,
                    context.with_params(fallback_defaults),
                    state,
                )
            for step in plan:
                self._apply_one(step, context, state)
        except ScopeError as error:
            logger.warning(
                "scope_application_failed",
                extra={
                    "action": context.action,
                    "error": str(error),
                    "applied_scopes": [key for key, _ in state.applied.values()],
                },
            )
            raise

        current_scopes = {
            state.applied[declaration.name][0]: state.applied[declaration.name][1]
            for declaration in declarations
            if declaration.name in state.applied
        }
        return ScopeApplication(
            collection=state.collection,
            current_scopes=MappingProxyType(current_scopes),
            steps=state.steps,
        )

    def _plan_parameters(
        self,
        phase: str,
        declarations: tuple[ScopeDeclaration, ...],
        skip_reasons: dict[str, str | None],
        context: RequestContext,
        state: _ApplicationState,
    ) -> list[_PlannedScope]:
        plan: list[_PlannedScope] = []
        for declaration in declarations:
            if (reason := skip_reasons[declaration.name]) is not None:
                _record_skip(state, phase, declaration, reason)
                continue
            raw_value = lookup_raw_value(declaration, context.params)
            if raw_value is _ABSENT:
                _record_skip(state, phase, declaration, "absent")
                continue
            if _is_blank(raw_value) and not declaration.allow_blank:
                _record_skip(state, phase, declaration, "blank")
                continue
            state.provided.add(declaration.name)
            resolved = coerce_value(declaration, raw_value)
            if resolved is None:
                _record_skip(state, phase, declaration, "boolean_false")
                continue
            plan.append(_PlannedScope(phase=phase, declaration=declaration, value=resolved))
        return plan

    def _plan_defaults(
        self,
        declarations: tuple[ScopeDeclaration, ...],
        skip_reasons: dict[str, str | None],
        planned: set[str],
        context: RequestContext,
        state: _ApplicationState,
    ) -> list[_PlannedScope]:
        pinned_only = bool(planned)
        plan: list[_PlannedScope] = []
        for declaration in declarations:
            if (reason := skip_reasons[declaration.name]) is not None:
                _record_skip(state, "default", declaration, reason)
                continue
            if not declaration.has_default:
                _record_skip(state, "default", declaration, "no_default")
                continue
            if declaration.name in planned:
                _record_skip(state, "default", declaration, "already_applied")
                continue
            if declaration.name in state.provided:
                _record_skip(state, "default", declaration, "provided_by_input")
                continue
            if pinned_only and not declaration.always:
                _record_skip(state, "default", declaration, "suppressed")
                continue
            resolved = coerce_value(declaration, resolve_default(declaration, context))
            if resolved is None:
                _record_skip(state, "default", declaration, "boolean_false")
                continue
            plan.append(_PlannedScope(phase="default", declaration=declaration, value=resolved))
        return plan

    def _apply_one(self, step: _PlannedScope, context: RequestContext, state: _ApplicationState) -> None:
        declaration = step.declaration
        if declaration.transform is not None:
            state.collection = declaration.transform(context, state.collection, *step.value.args)
        else:
            method = getattr(state.collection, declaration.name, None)
            if not callable(method):
                raise ScopeTargetError(
                    f"{type(state.collection).__name__} has no callable scope '{declaration.name}'"
                )
            state.collection = method(*step.value.args)

        state.applied[declaration.name] = (declaration.key, step.value.recorded)
        snapshot = _snapshot_scope_value(declaration, step.value.recorded)
        state.steps.append(
            {
                "phase": step.phase,
                "name": declaration.name,
                "key": declaration.key,
                "status": "applied",
                "value": snapshot,
            }
        )
        logger.info(
            "scope_applied",
            extra={"scope": declaration.name, "scope_key": declaration.key, "phase": step.phase, "value": snapshot},
        )


def applicability_skip_reason(declaration: ScopeDeclaration, context: RequestContext) -> str | None:
    if context.action in declaration.except_:
        return "action_filtered"
    if declaration.only is not None and context.action not in declaration.only:
        return "action_filtered"
    if declaration.if_ is not None and not context.check(declaration.if_):
        return "if_guard"
    if declaration.unless is not None and context.check(declaration.unless):
        return "unless_guard"
    return None


def is_applicable(declaration: ScopeDeclaration, context: RequestContext) -> bool:
    return applicability_skip_reason(declaration, context) is None


def lookup_raw_value(declaration: ScopeDeclaration, params: Mapping[str, Any]) -> Any:
    if declaration.param_key is not None:
        return params.get(declaration.param_key, _ABSENT)
    return params.get(declaration.name, _ABSENT)


def coerce_value(declaration: ScopeDeclaration, raw_value: Any) -> ResolvedValue | None:
    """Convert a raw value into the recorded value and call arguments.

    Returns None for a boolean scope whose value is false: such a scope is
    skipped entirely rather than called with ``False``.
    """
    if declaration.value_type == "boolean":
        if isinstance(raw_value, bool):
            flag = raw_value
        else:
            flag = BOOLEAN_STRINGS.get(str(raw_value))
            if flag is None:
                raise ScopeTypeMismatchError(declaration.name, "boolean", raw_value)
        return ResolvedValue(recorded=True, args=()) if flag else None

    if declaration.value_type == "hash":
        if not isinstance(raw_value, Mapping):
            raise ScopeTypeMismatchError(declaration.name, "hash", raw_value)
        if declaration.using_keys:
            return ResolvedValue(
                recorded=raw_value,
                args=tuple(raw_value.get(sub_key) for sub_key in declaration.using_keys),
            )
        return ResolvedValue(recorded=raw_value, args=(raw_value,))

    if declaration.value_type == "array":
        if not isinstance(raw_value, (list, tuple)):
            raise ScopeTypeMismatchError(declaration.name, "array", raw_value)
        return ResolvedValue(recorded=raw_value, args=(raw_value,))

    if isinstance(raw_value, Mapping):
        raise ScopeTypeMismatchError(declaration.name, "scalar", raw_value)
    return ResolvedValue(recorded=raw_value, args=(raw_value,))


def resolve_default(declaration: ScopeDeclaration, context: RequestContext) -> Any:
    default = declaration.default
    if isinstance(default, CallbackRef):
        return context.compute_default(default.name)
    if callable(default):
        return default(context)
    return default


def apply_scopes(
    registry: ScopeRegistry,
    context: RequestContext,
    collection: Any,
    fallback_defaults: Mapping[str, Any] | None = None,
) -> ScopeApplication:
    engine = ScopeEngine(registry)
    return engine.apply(context, collection, fallback_defaults=fallback_defaults)


def normalize_scope_entry(entry: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(str(key) for key in entry if key not in CONFIG_KEYS)
    if unknown:
        raise ScopeConfigError(f"unknown scope option(s): {', '.join(unknown)}")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise ScopeConfigError("scope entry requires a name")
    if "default" in entry and "default_callback" in entry:
        raise ScopeConfigError(f"scope '{name}' cannot define both default and default_callback")

    options: dict[str, Any] = {
        "name": name,
        "as_": entry.get("as"),
        "value_type": str(entry.get("type", "scalar")),
        "using": entry.get("using", ()),
        "if_": entry.get("if"),
        "unless": entry.get("unless"),
        "only": entry.get("only"),
        "except_": entry.get("except", ()),
        "always": bool(entry.get("always", False)),
        "allow_blank": bool(entry.get("allow_blank", False)),
    }
    if "default" in entry:
        options["default"] = entry["default"]
    elif entry.get("default_callback"):
        options["default"] = CallbackRef(str(entry["default_callback"]))
    return options


def load_scope_config(path: str | Path) -> ScopeRegistry:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, Mapping):
        payload = payload.get("scopes")
    if not isinstance(payload, list):
        raise ScopeConfigError("scope config must be a list of entries or an object with a 'scopes' list")
    return ScopeRegistry.from_config(payload)


def _name_tuple(value: str | Iterable[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, Mapping)):
        return len(value) == 0
    return False


def _record_skip(state: _ApplicationState, phase: str, declaration: ScopeDeclaration, reason: str) -> None:
    state.steps.append({"phase": phase, "name": declaration.name, "status": "skipped", "reason": reason})


def _snapshot_scope_value(declaration: ScopeDeclaration, value: Any) -> Any:
    """Log-safe form of an applied value, keyed off the scope's parameter key."""
    if any(marker in declaration.key.lower() for marker in SENSITIVE_SCOPE_MARKERS):
        return "<redacted>"
    if declaration.value_type == "hash":
        return {"keys": sorted(str(sub_key) for sub_key in value)}
    if declaration.value_type == "array":
        return list(value) if len(value) <= 10 else f"<array len={len(value)}>"
    if isinstance(value, str) and len(value) > 160:
        return f"{value[:157]}..."
    return value
