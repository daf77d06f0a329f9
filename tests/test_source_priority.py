"""Tests for source priority resolution and the config store."""

import itertools
import json
import tempfile
from pathlib import Path

import pytest

from folio.config.source_priority import (
    DEFAULT_POLICY,
    CallOverride,
    PolicyLayer,
    PriorityPolicy,
    SourcePriorityResolver,
    apply_override,
    build_policy,
    parse_source,
    parse_source_order,
    resolve,
    validate_priority,
)
from folio.config.store import ConfigStore, Settings
from folio.errors import ConfigurationError
from folio.models.element import BackendSource

LOCAL, REMOTE, REGISTRY = BackendSource.LOCAL, BackendSource.REMOTE, BackendSource.REGISTRY


# --- Validation Tests ---


def test_default_policy():
    assert DEFAULT_POLICY.priority == (LOCAL, REMOTE, REGISTRY)
    assert DEFAULT_POLICY.stop_on_first is True
    assert DEFAULT_POLICY.check_all_for_updates is False
    assert DEFAULT_POLICY.fallback_on_error is True


def test_validate_rejects_empty():
    result = validate_priority([])
    assert not result.is_valid
    assert "Priority list cannot be empty" in result.errors


def test_validate_rejects_duplicates():
    result = validate_priority(["local", "LOCAL"])
    assert not result.is_valid
    assert "Duplicate sources in priority list" in result.errors


def test_validate_rejects_unknown():
    result = validate_priority(["local", "ftp"])
    assert not result.is_valid
    assert any("Unknown source: ftp" in e for e in result.errors)


def test_aliases_are_accepted():
    assert parse_source("GitHub") == REMOTE
    assert parse_source("collection") == REGISTRY
    assert parse_source_order('["collection", "local"]') == (REGISTRY, LOCAL)


def test_parse_source_order_rejects_bad_json():
    with pytest.raises(ConfigurationError):
        parse_source_order("[local")


def test_build_policy_rejects_non_boolean_flags():
    with pytest.raises(ConfigurationError) as exc:
        build_policy({"priority": ["local"], "stop_on_first": "yes"})
    assert any("stop_on_first" in e for e in exc.value.errors)


def test_build_policy_accepts_camel_case_flags():
    policy = build_policy({"priority": ["remote"], "checkAllForUpdates": True})
    assert policy.priority == (REMOTE,)
    assert policy.check_all_for_updates is True


def test_every_valid_order_resolves_to_a_duplicate_free_subset():
    sources = ["local", "remote", "registry"]
    for size in (1, 2, 3):
        for order in itertools.permutations(sources, size):
            policy = resolve(persisted_config={"priority": list(order)})
            assert policy.priority
            assert len(set(policy.priority)) == len(policy.priority)
            assert set(policy.priority) <= {LOCAL, REMOTE, REGISTRY}
            assert [s.value for s in policy.priority] == list(order)


# --- Layering Tests ---


def test_no_layers_gives_default():
    assert resolve() == DEFAULT_POLICY


def test_persisted_beats_environment():
    policy = resolve(
        persisted_config={"priority": ["registry", "local"]},
        env_override='["remote"]',
    )
    assert policy.priority == (REGISTRY, LOCAL)
    assert policy.origin == "config"


def test_invalid_persisted_layer_falls_back_to_environment():
    policy = resolve(
        persisted_config={"priority": ["local", "local"]},
        env_override=json.dumps({"priority": ["remote", "local"], "stop_on_first": False}),
    )
    assert policy.priority == (REMOTE, LOCAL)
    assert policy.stop_on_first is False
    assert policy.origin == "environment"


def test_invalid_layers_fall_back_to_default():
    policy = resolve(persisted_config="not a policy", env_override="{broken json")
    assert policy == DEFAULT_POLICY


def test_loader_errors_skip_the_layer():
    def broken():
        raise ConfigurationError("unreadable file")

    resolver = SourcePriorityResolver(
        [PolicyLayer("config", broken), PolicyLayer("environment", lambda: '["registry"]')]
    )
    assert resolver.resolve().priority == (REGISTRY,)


def test_layers_are_loaded_lazily():
    calls = []

    def first():
        calls.append("first")
        return {"priority": ["local"]}

    def second():
        calls.append("second")
        return {"priority": ["remote"]}

    SourcePriorityResolver([PolicyLayer("a", first), PolicyLayer("b", second)]).resolve()
    assert calls == ["first"]


def test_environment_variable_layer():
    resolver = SourcePriorityResolver.from_environment(
        environ={"FOLIO_SOURCE_PRIORITY": '["registry", "remote", "local"]'}
    )
    assert resolver.resolve().priority == (REGISTRY, REMOTE, LOCAL)


# --- Per-call Override Tests ---


def test_call_order_replaces_everything_below_it():
    policy = resolve(
        CallOverride(order=(REGISTRY,)),
        persisted_config={"priority": ["local", "remote"], "fallback_on_error": False},
    )
    assert policy.priority == (REGISTRY,)
    assert policy.fallback_on_error is False
    assert policy.origin == "call"


def test_prefer_moves_source_to_front_without_duplicates():
    policy = resolve(CallOverride(prefer=REGISTRY))
    assert policy.priority == (REGISTRY, LOCAL, REMOTE)


def test_prefer_absent_source_is_ignored():
    base = PriorityPolicy(priority=(LOCAL, REMOTE))
    assert apply_override(base, CallOverride(prefer=REGISTRY)) is base


def test_invalid_call_order_is_ignored():
    policy = resolve(CallOverride(order=(LOCAL, LOCAL)))
    assert policy == DEFAULT_POLICY


# --- Config Store Tests ---


def test_store_round_trips_priority():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ConfigStore(tmpdir)
        assert store.load_priority_document() is None

        store.save_priority(PriorityPolicy(priority=(REMOTE, LOCAL), stop_on_first=False))
        resolver = SourcePriorityResolver.from_environment(
            persisted=store.load_priority_document, environ={}
        )
        policy = resolver.resolve()
        assert policy.priority == (REMOTE, LOCAL)
        assert policy.stop_on_first is False

        assert store.clear_priority() is True
        assert store.clear_priority() is False
        assert resolver.resolve() == DEFAULT_POLICY


def test_hand_edited_broken_yaml_is_skipped():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ConfigStore(tmpdir)
        Path(tmpdir, "source_priority.yml").write_text("priority: [local, remote\n")
        resolver = SourcePriorityResolver.from_environment(
            persisted=store.load_priority_document, environ={}
        )
        assert resolver.resolve() == DEFAULT_POLICY


def test_settings_defaults_and_overrides():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ConfigStore(tmpdir)
        settings = store.load_settings()
        assert settings.portfolio_dir == str(Path(tmpdir) / "portfolio")
        assert settings.sync.require_confirmation is True

        Path(tmpdir, "config.yml").write_text(
            "github:\n  owner: alice\nsync:\n  enabled: false\nbackend_timeout_seconds: 3\n"
        )
        settings = store.load_settings()
        assert settings.github.owner == "alice"
        assert settings.github.repository == "folio-portfolio"
        assert settings.sync.enabled is False
        assert settings.backend_timeout_seconds == 3.0


def test_settings_reject_bad_types():
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_dict({"sync": {"enabled": "sometimes"}, "cache": {"max_entries": -1}})
    assert len(exc.value.errors) == 2


def test_settings_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ConfigStore(tmpdir)
        settings = Settings(portfolio_dir="/data/portfolio")
        settings.registry.index_url = "https://example.test/index.json"
        store.save_settings(settings)
        loaded = store.load_settings()
        assert loaded.portfolio_dir == "/data/portfolio"
        assert loaded.registry.index_url == "https://example.test/index.json"
