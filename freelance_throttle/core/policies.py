"""Named throttling policies.

Every route that is rate limited references one of these policies by name.
Policies are immutable and built once at startup; only the ``general``
window and quota can be tuned through the environment.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType

from freelance_throttle.core.config import RateLimitSettings, settings
from freelance_throttle.core.errors import UnknownPolicyError

MINUTE = 60
HOUR = 60 * MINUTE


class KeyStrategy(str, Enum):
    """How a request is mapped to the identity its quota is tracked against."""

    USER_OR_IP = "user_or_ip"
    IP = "ip"


@dataclass(frozen=True)
class Policy:
    """A throttling rule.

    Attributes:
        name: Registry name, also used in the counter key prefix.
        window_seconds: Length of the fixed window.
        max_requests: Requests allowed per window.
        key_strategy: Requester identity used for the counter.
        message: Human-readable rejection message.
        skip_successful_requests: Refund hits whose response status is < 400.
        skip_failed_requests: Refund hits whose response status is >= 400.
        status_code: Status returned on rejection.
        standard_headers: Emit X-RateLimit-* headers.
    """

    name: str
    window_seconds: int
    max_requests: int
    key_strategy: KeyStrategy
    message: str
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    status_code: int = 429
    standard_headers: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("policy name must be non-empty")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.skip_successful_requests and self.skip_failed_requests:
            raise ValueError("a policy cannot skip both successful and failed requests")

    def rejection_body(self) -> dict[str, object]:
        return {"success": False, "message": self.message}


DEFAULT_POLICIES: tuple[Policy, ...] = (
    Policy(
        name="general",
        window_seconds=15 * MINUTE,
        max_requests=100,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Too many requests from this IP, please try again later.",
    ),
    Policy(
        name="auth",
        window_seconds=MINUTE,
        max_requests=5,
        key_strategy=KeyStrategy.IP,
        message="Too many login attempts, please try again later.",
        skip_successful_requests=True,
    ),
    Policy(
        name="password_reset",
        window_seconds=HOUR,
        max_requests=3,
        key_strategy=KeyStrategy.IP,
        message="Too many password reset requests, please try again later.",
    ),
    Policy(
        name="task_creation",
        window_seconds=HOUR,
        max_requests=10,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Task creation limit exceeded. Please try again later.",
    ),
    Policy(
        name="proposal",
        window_seconds=HOUR,
        max_requests=20,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Proposal submission limit exceeded. Please try again later.",
    ),
    Policy(
        name="payment",
        window_seconds=HOUR,
        max_requests=5,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Payment processing limit exceeded. Please try again later.",
    ),
    Policy(
        name="message",
        window_seconds=MINUTE,
        max_requests=30,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Message sending limit exceeded. Please slow down.",
    ),
    Policy(
        name="file_upload",
        window_seconds=HOUR,
        max_requests=10,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="File upload limit exceeded. Please try again later.",
    ),
    Policy(
        name="ws_message",
        window_seconds=MINUTE,
        max_requests=60,
        key_strategy=KeyStrategy.IP,
        message="Too many realtime messages. Please slow down.",
        skip_failed_requests=True,
    ),
    Policy(
        name="search",
        window_seconds=MINUTE,
        max_requests=30,
        key_strategy=KeyStrategy.USER_OR_IP,
        message="Search limit exceeded. Please slow down.",
    ),
)

POLICY_NAMES: frozenset[str] = frozenset(p.name for p in DEFAULT_POLICIES)


class PolicyRegistry(Mapping[str, Policy]):
    """Read-only name -> Policy mapping."""

    def __init__(self, policies: Iterable[Policy]) -> None:
        table: dict[str, Policy] = {}
        for policy in policies:
            if policy.name in table:
                raise ValueError(f"duplicate policy name: {policy.name}")
            table[policy.name] = policy
        self._table = MappingProxyType(table)

    def __getitem__(self, name: str) -> Policy:
        return self._table[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def get_policy(self, name: str) -> Policy:
        """Return the policy called ``name``.

        Raises:
            UnknownPolicyError: If no such policy is declared.
        """
        try:
            return self._table[name]
        except KeyError:
            raise UnknownPolicyError(
                code="unknown_rate_limit_policy",
                message=f"Unknown rate limit policy: {name}",
                details={"policy": name, "hint": f"Known policies: {', '.join(sorted(self._table))}"},
            ) from None


def build_policy_registry(rate_limit_settings: RateLimitSettings | None = None) -> PolicyRegistry:
    """Build the registry, applying environment overrides to ``general``."""

    cfg = rate_limit_settings or settings.rate_limit
    policies = []
    for policy in DEFAULT_POLICIES:
        if policy.name == "general":
            overrides: dict[str, int] = {}
            if cfg.window_ms:
                overrides["window_seconds"] = max(1, cfg.window_ms // 1000)
            if cfg.max_requests:
                overrides["max_requests"] = cfg.max_requests
            if overrides:
                policy = replace(policy, **overrides)
        policies.append(policy)
    return PolicyRegistry(policies)
