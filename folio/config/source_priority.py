"""Source priority: which backends are consulted, in what order.

The effective policy is resolved from layers, highest precedence first:

1. a one-shot override supplied with the current call (a full replacement
   order, or a single "prefer this source" hint);
2. the user's persisted policy document;
3. the ``FOLIO_SOURCE_PRIORITY`` environment variable (mainly for tests);
4. the built-in default: local -> remote -> registry.

Each layer is loaded lazily and validated on its own. An invalid layer is
skipped with a warning and the next lower one is consulted, so a malformed
hand edit never breaks resolution. Local comes first so local edits are
never shadowed by a stale remote or registry copy; the read-only registry
comes last because it is the most likely to collide by name with user content.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Mapping, Optional, Sequence

from loguru import logger

from folio.errors import ConfigurationError
from folio.models.element import BackendSource

ENV_VAR = "FOLIO_SOURCE_PRIORITY"

DEFAULT_ORDER: tuple[BackendSource, ...] = (
    BackendSource.LOCAL,
    BackendSource.REMOTE,
    BackendSource.REGISTRY,
)

_ALIASES = {
    "github": BackendSource.REMOTE,
    "collection": BackendSource.REGISTRY,
}

_FLAG_KEYS = {
    "stop_on_first": ("stop_on_first", "stopOnFirst"),
    "check_all_for_updates": ("check_all_for_updates", "checkAllForUpdates"),
    "fallback_on_error": ("fallback_on_error", "fallbackOnError"),
}


@dataclass(frozen=True)
class PriorityPolicy:
    """Validated, immutable backend consultation order plus traversal flags."""

    priority: tuple[BackendSource, ...] = DEFAULT_ORDER
    stop_on_first: bool = True
    check_all_for_updates: bool = False
    fallback_on_error: bool = True
    origin: str = field(default="default", compare=False)

    def to_dict(self) -> dict:
        return {
            "priority": [s.value for s in self.priority],
            "stop_on_first": self.stop_on_first,
            "check_all_for_updates": self.check_all_for_updates,
            "fallback_on_error": self.fallback_on_error,
        }

    def describe(self) -> str:
        return " -> ".join(s.display_name for s in self.priority)


DEFAULT_POLICY = PriorityPolicy()


@dataclass
class ValidationResult:
    """Outcome of validating a priority list or policy document."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CallOverride:
    """Per-call override: ``order`` replaces the list, ``prefer`` moves one source first."""

    order: Optional[tuple[BackendSource, ...]] = None
    prefer: Optional[BackendSource] = None


# ----------------------------------------------------------------------
# Parsing and validation
# ----------------------------------------------------------------------


def parse_source(token: str | BackendSource) -> BackendSource:
    """Parse a source token, accepting ``github``/``collection`` aliases."""
    if isinstance(token, BackendSource):
        return token
    if not isinstance(token, str):
        raise ConfigurationError(f"Invalid source value: {token!r}")
    lowered = token.strip().lower()
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    try:
        return BackendSource(lowered)
    except ValueError:
        valid = ", ".join(s.value for s in BackendSource)
        raise ConfigurationError(f"Unknown source: {token}. Valid sources: {valid}") from None


def validate_priority(priority: object) -> ValidationResult:
    """Check a raw priority list: non-empty, known tokens, no duplicates."""
    if not isinstance(priority, (list, tuple)):
        return ValidationResult(False, ["Priority must be a list of sources"])
    if not priority:
        return ValidationResult(False, ["Priority list cannot be empty"])

    errors: list[str] = []
    parsed: list[BackendSource] = []
    for item in priority:
        try:
            parsed.append(parse_source(item))
        except ConfigurationError as e:
            errors.append(str(e))

    if len(set(parsed)) != len(parsed):
        errors.append("Duplicate sources in priority list")

    return ValidationResult(is_valid=not errors, errors=errors)


def parse_source_order(value: object) -> tuple[BackendSource, ...]:
    """Parse a JSON string or list of source tokens into a validated order."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in source priority order: {e}") from e

    result = validate_priority(value)
    if not result.is_valid:
        raise ConfigurationError("Invalid source priority order", result.errors)
    return tuple(parse_source(item) for item in value)  # type: ignore[union-attr]


def build_policy(data: object, origin: str = "config") -> PriorityPolicy:
    """Build a policy from a document: a mapping, or a bare list of sources.

    Raises:
        ConfigurationError: If the document is malformed in any way.
    """
    if isinstance(data, (list, tuple)):
        return PriorityPolicy(priority=parse_source_order(list(data)), origin=origin)
    if not isinstance(data, Mapping):
        raise ConfigurationError(
            f"Source priority must be a mapping or a list, got {type(data).__name__}"
        )

    errors: list[str] = []
    if "priority" not in data:
        errors.append("Missing 'priority' list")
        order: tuple[BackendSource, ...] = ()
    else:
        result = validate_priority(data["priority"])
        errors.extend(result.errors)
        order = tuple(parse_source(s) for s in data["priority"]) if result.is_valid else ()

    flags: dict[str, bool] = {}
    for attr, names in _FLAG_KEYS.items():
        for name in names:
            if name in data:
                value = data[name]
                if not isinstance(value, bool):
                    errors.append(f"{name} must be a boolean, got {value!r}")
                else:
                    flags[attr] = value
                break

    if errors:
        raise ConfigurationError("Invalid source priority configuration", errors)
    return PriorityPolicy(priority=order, origin=origin, **flags)


def validate_policy(data: object) -> ValidationResult:
    """Validate a policy document without raising."""
    try:
        build_policy(data)
    except ConfigurationError as e:
        return ValidationResult(False, e.errors or [str(e)])
    return ValidationResult(True, [])


# ----------------------------------------------------------------------
# Layered resolution
# ----------------------------------------------------------------------


PolicyLoader = Callable[[], object]


@dataclass
class PolicyLayer:
    """One configuration layer: a name and a lazy loader of its raw document.

    The loader returns ``None`` when the layer has nothing to say, and may
    raise ``ConfigurationError`` when its document cannot be read.
    """

    name: str
    load: PolicyLoader


class SourcePriorityResolver:
    """Evaluates policy layers in order and applies per-call overrides."""

    def __init__(self, layers: Sequence[PolicyLayer] = ()):
        self.layers = list(layers)

    @classmethod
    def from_environment(
        cls,
        persisted: Optional[PolicyLoader] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SourcePriorityResolver:
        env = os.environ if environ is None else environ
        layers = []
        if persisted is not None:
            layers.append(PolicyLayer("config", persisted))
        layers.append(PolicyLayer("environment", lambda: env.get(ENV_VAR) or None))
        return cls(layers)

    def base_policy(self) -> PriorityPolicy:
        """The highest valid layer, or the built-in default."""
        for layer in self.layers:
            try:
                raw = layer.load()
                if raw is None:
                    continue
                if isinstance(raw, PriorityPolicy):
                    return replace(raw, origin=layer.name)
                if isinstance(raw, str):
                    raw = _decode_json(raw, layer.name)
                policy = build_policy(raw, origin=layer.name)
            except ConfigurationError as e:
                details = "; ".join(e.errors) if e.errors else str(e)
                logger.warning(f"Ignoring invalid source priority from {layer.name}: {details}")
                continue
            logger.debug(f"Source priority from {layer.name}: {policy.describe()}")
            return policy
        return DEFAULT_POLICY

    def resolve(self, call_override: Optional[CallOverride] = None) -> PriorityPolicy:
        return apply_override(self.base_policy(), call_override)


def apply_override(base: PriorityPolicy, override: Optional[CallOverride]) -> PriorityPolicy:
    """Merge a per-call override into ``base``; an invalid override is ignored."""
    if override is None:
        return base

    if override.order is not None:
        result = validate_priority(list(override.order))
        if result.is_valid:
            return replace(base, priority=tuple(override.order), origin="call")
        logger.warning(f"Ignoring invalid per-call source order: {'; '.join(result.errors)}")
        return base

    if override.prefer is not None:
        if override.prefer not in base.priority:
            logger.warning(
                f"Preferred source '{override.prefer.value}' is not in the active order "
                f"({', '.join(s.value for s in base.priority)}); ignoring it"
            )
            return base
        order = (override.prefer,) + tuple(s for s in base.priority if s != override.prefer)
        return replace(base, priority=order, origin="call")

    return base


def resolve(
    call_override: Optional[CallOverride] = None,
    persisted_config: object = None,
    env_override: Optional[str] = None,
) -> PriorityPolicy:
    """Resolve a policy from explicit layer values (no file or env access)."""
    resolver = SourcePriorityResolver(
        [
            PolicyLayer("config", lambda: persisted_config),
            PolicyLayer("environment", lambda: env_override),
        ]
    )
    return resolver.resolve(call_override)


def _decode_json(raw: str, layer: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse {layer} source priority as JSON: {e}") from e


def sources_of(values: Iterable[str]) -> tuple[BackendSource, ...]:
    """Convenience for CLI and tests: parse tokens without the full validation report."""
    return parse_source_order(list(values))
