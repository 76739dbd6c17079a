"""Tests for the declarative policy table."""

import dataclasses

import pytest

from freelance_throttle.core.config import RateLimitSettings
from freelance_throttle.core.errors import ConfigurationAppError, UnknownPolicyError
from freelance_throttle.core.policies import (
    DEFAULT_POLICIES,
    HOUR,
    MINUTE,
    KeyStrategy,
    Policy,
    PolicyRegistry,
    build_policy_registry,
)
from freelance_throttle.core.rate_limit import rate_limit


EXPECTED_TABLE = {
    "general": (15 * MINUTE, 100, KeyStrategy.USER_OR_IP),
    "auth": (MINUTE, 5, KeyStrategy.IP),
    "password_reset": (HOUR, 3, KeyStrategy.IP),
    "task_creation": (HOUR, 10, KeyStrategy.USER_OR_IP),
    "proposal": (HOUR, 20, KeyStrategy.USER_OR_IP),
    "payment": (HOUR, 5, KeyStrategy.USER_OR_IP),
    "message": (MINUTE, 30, KeyStrategy.USER_OR_IP),
    "file_upload": (HOUR, 10, KeyStrategy.USER_OR_IP),
    "ws_message": (MINUTE, 60, KeyStrategy.IP),
    "search": (MINUTE, 30, KeyStrategy.USER_OR_IP),
}


def test_registry_matches_declared_table() -> None:
    registry = build_policy_registry(RateLimitSettings())

    assert set(registry) == set(EXPECTED_TABLE)
    for name, (window, quota, strategy) in EXPECTED_TABLE.items():
        policy = registry[name]
        assert (policy.window_seconds, policy.max_requests, policy.key_strategy) == (window, quota, strategy)
        assert policy.status_code == 429
        assert policy.standard_headers is True


def test_only_auth_skips_successes_and_only_ws_message_skips_failures() -> None:
    skipping_success = {p.name for p in DEFAULT_POLICIES if p.skip_successful_requests}
    skipping_failure = {p.name for p in DEFAULT_POLICIES if p.skip_failed_requests}

    assert skipping_success == {"auth"}
    assert skipping_failure == {"ws_message"}


def test_auth_rejection_body() -> None:
    registry = build_policy_registry(RateLimitSettings())

    assert registry["auth"].rejection_body() == {
        "success": False,
        "message": "Too many login attempts, please try again later.",
    }


def test_policies_are_immutable() -> None:
    policy = DEFAULT_POLICIES[0]

    with pytest.raises(dataclasses.FrozenInstanceError):
        policy.max_requests = 1  # type: ignore[misc]


def test_registry_is_read_only() -> None:
    registry = build_policy_registry(RateLimitSettings())

    with pytest.raises(TypeError):
        registry["general"] = DEFAULT_POLICIES[1]  # type: ignore[index]


def test_general_policy_env_overrides() -> None:
    registry = build_policy_registry(RateLimitSettings(window_ms=60_000, max_requests=7))

    assert registry["general"].window_seconds == 60
    assert registry["general"].max_requests == 7
    assert registry["auth"].max_requests == 5


def test_general_policy_overrides_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "120000")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "250")

    registry = build_policy_registry(RateLimitSettings())

    assert registry["general"].window_seconds == 120
    assert registry["general"].max_requests == 250


def test_unknown_policy_lookup_raises() -> None:
    registry = build_policy_registry(RateLimitSettings())

    with pytest.raises(UnknownPolicyError) as excinfo:
        registry.get_policy("nope")

    assert excinfo.value.code == "unknown_rate_limit_policy"
    assert isinstance(excinfo.value, KeyError)
    assert isinstance(excinfo.value, ConfigurationAppError)


def test_unknown_policy_rejected_when_declaring_route_dependency() -> None:
    with pytest.raises(ConfigurationAppError):
        rate_limit("not_a_policy")


def test_duplicate_policy_names_rejected() -> None:
    policy = DEFAULT_POLICIES[0]

    with pytest.raises(ValueError):
        PolicyRegistry([policy, policy])


@pytest.mark.parametrize(
    "overrides",
    [
        {"window_seconds": 0},
        {"max_requests": 0},
        {"name": ""},
        {"skip_successful_requests": True, "skip_failed_requests": True},
    ],
)
def test_invalid_policy_values(overrides: dict) -> None:
    base = {
        "name": "x",
        "window_seconds": 60,
        "max_requests": 1,
        "key_strategy": KeyStrategy.IP,
        "message": "slow down",
    }
    base.update(overrides)

    with pytest.raises(ValueError):
        Policy(**base)
