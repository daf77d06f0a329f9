"""Layered configuration: source priority policy and persisted settings."""

from folio.config.source_priority import (
    DEFAULT_POLICY,
    CallOverride,
    PriorityPolicy,
    SourcePriorityResolver,
    ValidationResult,
    resolve,
    validate_priority,
)
from folio.config.store import ConfigStore, Settings

__all__ = [
    "DEFAULT_POLICY",
    "CallOverride",
    "ConfigStore",
    "PriorityPolicy",
    "Settings",
    "SourcePriorityResolver",
    "ValidationResult",
    "resolve",
    "validate_priority",
]
