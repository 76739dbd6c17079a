"""Requester identity used for rate limit keys.

Authentication itself happens upstream: an auth dependency or middleware is
expected to store the authenticated principal on ``request.state`` as
``user_id`` (or as a ``user`` object/dict carrying an ``id``). This module
only reads it.
"""

from __future__ import annotations

from typing import Any

from starlette.requests import HTTPConnection

from freelance_throttle.core.policies import KeyStrategy, Policy

UNKNOWN_CLIENT = "unknown"


def client_ip(connection: HTTPConnection, *, trust_proxy: bool = False) -> str:
    """Return the remote address of an HTTP request or websocket.

    With ``trust_proxy`` the left-most ``X-Forwarded-For`` entry wins, the
    same address a proxy-aware server would report.
    """

    if trust_proxy:
        forwarded = connection.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",", 1)[0].strip()
            if first:
                return first

    if connection.client and connection.client.host:
        return connection.client.host
    return UNKNOWN_CLIENT


def authenticated_user_id(connection: HTTPConnection) -> str | None:
    """Return the authenticated principal's id, if upstream auth set one."""

    state = connection.state
    user_id: Any = getattr(state, "user_id", None)
    if user_id is None:
        user = getattr(state, "user", None)
        if isinstance(user, dict):
            user_id = user.get("id")
        elif user is not None:
            user_id = getattr(user, "id", None)

    if user_id is None or user_id == "":
        return None
    return str(user_id)


def derive_key(policy: Policy, connection: HTTPConnection, *, trust_proxy: bool = False) -> str:
    """Map a request to the identity its quota is tracked against.

    ``user_or_ip`` uses the user id when present and the IP otherwise; the two
    are never combined.

    Examples:
        ``user:42`` for an authenticated request under a user-keyed policy,
        ``ip:1.2.3.4`` otherwise.
    """

    if policy.key_strategy is KeyStrategy.USER_OR_IP:
        user_id = authenticated_user_id(connection)
        if user_id is not None:
            return f"user:{user_id}"
    return f"ip:{client_ip(connection, trust_proxy=trust_proxy)}"
