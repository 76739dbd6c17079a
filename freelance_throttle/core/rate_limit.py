"""Request gate: per-route rate limit enforcement for FastAPI.

This module wires the policy registry and the store adapter into the HTTP
layer.

Flow per request:
1. The route declares its policy with ``Depends(rate_limit("<name>"))``.
2. The requester key is derived from the policy's key strategy.
3. The store adapter increments the ``(policy, key)`` counter atomically.
4. count <= quota: the request proceeds; X-RateLimit-* headers are added by
   ``rate_limit_outcome_middleware``.
5. count > quota: ``RateLimitExceededError`` is raised and rendered as a
   429 ``{"success": false, "message": ...}`` response.

The increment happens before the quota check, so there is no separate commit
step. A hit is never rolled back when the client goes away mid-request.
Policies that skip successful or failed requests are refunded after the
response status is known.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Request
from starlette.requests import HTTPConnection

from freelance_throttle.adapters.rate_limit.base import RateLimitResult, StoreMode
from freelance_throttle.adapters.rate_limit.store_adapter import RateLimitStoreAdapter
from freelance_throttle.core.errors import ConfigurationAppError, RateLimitExceededError, UnknownPolicyError
from freelance_throttle.core.identity import derive_key
from freelance_throttle.core.policies import POLICY_NAMES, Policy, PolicyRegistry

logger = logging.getLogger(__name__)

DECISIONS_STATE_ATTR = "rate_limit_decisions"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of evaluating one policy for one requester."""

    policy: Policy
    key: str
    result: RateLimitResult
    store: StoreMode | None = None

    @property
    def allowed(self) -> bool:
        return self.result.allowed


class RequestGate:
    """Evaluate named policies against the counter store.

    Args:
        adapter: Store adapter performing the increments.
        registry: Declared policies.
        enabled: When False, ``evaluate`` lets everything through uncounted.
        trust_proxy: Derive client IPs from X-Forwarded-For.
        clock: Time source used for Retry-After.
    """

    def __init__(
        self,
        adapter: RateLimitStoreAdapter,
        registry: PolicyRegistry,
        *,
        enabled: bool = True,
        trust_proxy: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter = adapter
        self.registry = registry
        self.enabled = enabled
        self.trust_proxy = trust_proxy
        self._clock = clock

    async def hit(self, policy_name: str, key: str) -> GateDecision:
        """Count one request for ``key`` under ``policy_name`` and decide."""

        policy = self.registry.get_policy(policy_name)
        window = await self.adapter.increment(policy.name, key, policy.window_seconds)

        reset_at = int(math.ceil(window.reset_at))
        allowed = window.count <= policy.max_requests
        retry_after = None
        if not allowed:
            retry_after = max(1, int(math.ceil(window.reset_at - self._clock())))

        result = RateLimitResult(
            allowed=allowed,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - window.count),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

        if not allowed:
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "policy": policy.name,
                    "requester": key,
                    "limit": policy.max_requests,
                    "count": window.count,
                    "window_s": policy.window_seconds,
                    "retry_after_s": retry_after,
                    "store_mode": (window.store or self.adapter.mode).value,
                },
            )
        else:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "policy": policy.name,
                    "requester": key,
                    "remaining": result.remaining,
                },
            )
        return GateDecision(policy=policy, key=key, result=result, store=window.store)

    async def release(self, policy_name: str, key: str, store: StoreMode | None = None) -> None:
        """Refund one hit, e.g. for a request the policy does not count.

        Pass the ``store`` of the decision being refunded so the hit is
        returned to the counter that recorded it.
        """

        policy = self.registry.get_policy(policy_name)
        await self.adapter.decrement(policy.name, key, store)

    async def evaluate(self, policy_name: str, connection: HTTPConnection) -> GateDecision | None:
        """Derive the requester key from ``connection`` and count the request.

        Returns None when rate limiting is disabled.
        """

        if not self.enabled:
            return None
        policy = self.registry.get_policy(policy_name)
        key = derive_key(policy, connection, trust_proxy=self.trust_proxy)
        return await self.hit(policy.name, key)

    async def settle(self, decision: GateDecision, status_code: int) -> bool:
        """Apply the policy's skip rule once the response status is known.

        Returns True when the hit was refunded.
        """

        policy = decision.policy
        succeeded = status_code < 400
        if (policy.skip_successful_requests and succeeded) or (
            policy.skip_failed_requests and not succeeded
        ):
            await self.release(policy.name, decision.key, decision.store)
            return True
        return False


def get_request_gate(connection: HTTPConnection) -> RequestGate:
    """Return the gate built by the application lifespan."""

    gate = getattr(connection.app.state, "request_gate", None)
    if gate is None:
        raise ConfigurationAppError(
            code="rate_limiter_not_initialized",
            message="Rate limiter is not initialized",
            details={"hint": "Run the app with its lifespan (e.g. `with TestClient(app)`)"},
        )
    return gate


def rate_limit(policy_name: str) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency enforcing ``policy_name``.

    Usage:
        @router.post("/auth/login", dependencies=[Depends(rate_limit("auth"))])

    Raises:
        UnknownPolicyError: At declaration time for an unknown policy name.
    """

    if policy_name not in POLICY_NAMES:
        raise UnknownPolicyError(
            code="unknown_rate_limit_policy",
            message=f"Unknown rate limit policy: {policy_name}",
            details={"policy": policy_name},
        )

    async def enforce(request: Request) -> None:
        gate = get_request_gate(request)
        decision = await gate.evaluate(policy_name, request)
        if decision is None:
            return

        decisions = getattr(request.state, DECISIONS_STATE_ATTR, None)
        if decisions is None:
            decisions = []
            setattr(request.state, DECISIONS_STATE_ATTR, decisions)
        decisions.append(decision)

        if decision.allowed:
            return

        policy = decision.policy
        raise RateLimitExceededError(
            code="rate_limit_exceeded",
            message=policy.message,
            details={
                "policy": policy.name,
                "limit": decision.result.limit,
                "remaining": decision.result.remaining,
                "reset_at": decision.result.reset_at,
                "retry_after": decision.result.retry_after_seconds or 0,
            },
            status_code=policy.status_code,
            headers=decision.result.to_headers() if policy.standard_headers else {},
        )

    enforce.__name__ = f"rate_limit_{policy_name}"
    return enforce
