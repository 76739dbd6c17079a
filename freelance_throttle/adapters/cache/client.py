"""Async cache backend client with explicit lifecycle and graceful degradation.

A ``CacheClient`` owns exactly one ``redis.asyncio.Redis`` connection object.
Consumers receive the client (not the raw connection) and go through its
public operations, so connection state is only ever mutated here.

Lifecycle::

    disconnected --initialize()--> connecting --ping ok--> connected
    connecting --retries exhausted--> error   (terminal until initialize())
    connected --connection lost--> disconnected --background reconnect--> ...
    any --close()--> disconnected

Reconnect backoff grows by 100ms per attempt, capped at 3s, and gives up once
attempts exceed ``max_retries``. Command execution itself never retries.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from freelance_throttle.adapters.cache.stats import CacheStats
from freelance_throttle.core.config import RedisSettings, settings
from freelance_throttle.core.errors import (
    CacheCommandError,
    CacheConnectionError,
    CacheError,
    CacheUnavailableError,
)

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class CallMode(str, Enum):
    """How a caller wants command failures surfaced.

    STRICT: the failure is raised from ``execute_command``.
    WITH_FALLBACK: the failure is logged and ``None`` is returned.
    """

    STRICT = "strict"
    WITH_FALLBACK = "with_fallback"


@dataclass(frozen=True)
class CacheResult:
    """Outcome of a single backend command: a value or an error."""

    value: Any = None
    error: CacheError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

    def value_or_none(self) -> Any:
        return self.value if self.error is None else None


@dataclass(frozen=True)
class ReconnectStrategy:
    """Linear backoff with a cap and a bounded number of attempts."""

    max_retries: int = 3
    step_seconds: float = 0.1
    cap_seconds: float = 3.0

    def delay_for(self, attempt: int) -> float | None:
        """Delay before retry number ``attempt`` (1-based), or None to give up."""

        if attempt > self.max_retries:
            return None
        return min(attempt * self.step_seconds, self.cap_seconds)


ConnectionFactory = Callable[[RedisSettings], Any]


def create_redis_connection(redis_settings: RedisSettings) -> Redis:
    """Build the backend connection object; no I/O happens until first use.

    Retries are disabled in the driver so backoff is owned by ``CacheClient``.
    """

    return Redis.from_url(
        redis_settings.resolved_url(),
        password=redis_settings.password or None,
        db=redis_settings.db,
        socket_connect_timeout=redis_settings.connect_timeout_seconds,
        socket_timeout=redis_settings.connect_timeout_seconds,
        decode_responses=True,
        retry=Retry(NoBackoff(), 0),
    )


def parse_info(info: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Parse INFO output into a dict.

    Raw text is split line by line on the first colon; section headers and
    blank lines are skipped. Already-parsed mappings are copied as-is.
    """

    if info is None:
        return {}
    if isinstance(info, Mapping):
        return dict(info)

    result: dict[str, Any] = {}
    for line in info.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        result[key] = value
    return result


class CacheClient:
    """Single reusable handle to the key-value backend.

    Args:
        redis_settings: Backend address and credentials.
        max_retries: Reconnect attempts before the connection is abandoned.
        connection_factory: Builds the backend connection; tests inject fakes.
        name: Label used in logs to tell several clients apart.
        sleep: Awaitable sleep used between reconnect attempts.
    """

    def __init__(
        self,
        redis_settings: RedisSettings | None = None,
        *,
        max_retries: int | None = None,
        connection_factory: ConnectionFactory | None = None,
        name: str = "cache",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = redis_settings or settings.redis
        retries = settings.cache.max_retries if max_retries is None else max_retries
        self._strategy = ReconnectStrategy(max_retries=retries)
        self._factory = connection_factory or create_redis_connection
        self._sleep = sleep
        self.name = name

        self._connection: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._retry_count = 0
        self._closed = False
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None

        self.stats = CacheStats()

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"CacheClient(name={self.name!r}, state={self._state.value}, backend={self.backend_label!r})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def max_retries(self) -> int:
        return self._strategy.max_retries

    @property
    def backend_label(self) -> str:
        """Host/port/db without credentials, safe for logs."""

        if self._settings.url:
            tail = self._settings.url.rsplit("@", 1)[-1]
            return tail.split("://", 1)[-1]
        return f"{self._settings.host}:{self._settings.port}/{self._settings.db}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> Any:
        """Create and connect the backend connection once.

        Returns the existing connection when one is already live. After the
        client has entered the ``error`` state a call builds a fresh
        connection. Connection failures are logged and leave the client
        unavailable; nothing is raised.
        """

        async with self._connect_lock:
            if self._connection is not None and self._state is not ConnectionState.ERROR:
                return self._connection

            if self._connection is not None:
                await self._dispose_connection()

            self._closed = False
            self._connection = self._factory(self._settings)
            try:
                await self._connect_with_retry()
            except CacheConnectionError as exc:
                logger.error(
                    "cache.initialize_failed",
                    extra={
                        "client": self.name,
                        "backend": self.backend_label,
                        "attempts": self._retry_count,
                        "error_message": exc.message,
                    },
                )
            else:
                logger.info("cache.initialized", extra={"client": self.name, "backend": self.backend_label})
            return self._connection

    async def close(self) -> None:
        """Close the connection gracefully, letting pending commands finish."""

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        async with self._connect_lock:
            if self._connection is None:
                return
            await self._dispose_connection()
            self._closed = True
            logger.info("cache.closed", extra={"client": self.name})

    def is_available(self) -> bool:
        """True only when connected and the transport has not been closed.

        The connection object is the transport handle: it is only ever closed
        through ``_dispose_connection``, which drops it, and a transport the
        backend closes surfaces as a connection error on the next command,
        which moves the state off ``connected``. ``redis.asyncio.Redis``
        exposes no open/closed flag of its own to consult.
        """

        return (
            self._state is ConnectionState.CONNECTED
            and self._connection is not None
            and not self._closed
        )

    async def _dispose_connection(self) -> None:
        connection, self._connection = self._connection, None
        try:
            await connection.aclose()
        except (RedisError, OSError) as exc:
            logger.error(
                "cache.close_failed",
                extra={"client": self.name, "error_message": str(exc)},
            )
        self._transition(ConnectionState.DISCONNECTED, "end")

    async def _connect_with_retry(self) -> None:
        self._transition(ConnectionState.CONNECTING, "connect")
        attempt = 0
        while True:
            try:
                await self._connection.ping()
            except _CONNECTION_ERRORS as exc:
                attempt += 1
                self._retry_count = attempt
                delay = self._strategy.delay_for(attempt)
                if delay is None:
                    self._transition(ConnectionState.ERROR, "error")
                    logger.error(
                        "cache.reconnect_exhausted",
                        extra={
                            "client": self.name,
                            "attempts": attempt,
                            "max_retries": self._strategy.max_retries,
                            "error_message": str(exc),
                        },
                    )
                    raise CacheConnectionError(
                        code="cache_connection_failed",
                        message="Cache reconnection failed after max retries",
                        details={"attempts": attempt},
                    ) from exc
                logger.info(
                    "cache.reconnecting",
                    extra={
                        "client": self.name,
                        "attempt": attempt,
                        "max_retries": self._strategy.max_retries,
                        "delay_s": delay,
                    },
                )
                await self._sleep(delay)
                continue

            self._retry_count = 0
            self._transition(ConnectionState.CONNECTED, "ready")
            return

    def _transition(self, state: ConnectionState, event: str) -> None:
        previous, self._state = self._state, state
        if previous is state:
            return
        level = logging.WARNING if state in (ConnectionState.ERROR, ConnectionState.DISCONNECTED) else logging.INFO
        logger.log(
            level,
            "cache.state_changed",
            extra={
                "client": self.name,
                "event": event,
                "from_state": previous.value,
                "to_state": state.value,
            },
        )

    def _on_connection_lost(self, exc: BaseException) -> None:
        """Hand a dropped connection over to the background reconnect loop."""

        if self._closed or self._state is ConnectionState.ERROR:
            return
        self._transition(ConnectionState.DISCONNECTED, "end")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        async with self._connect_lock:
            if self._closed or self._connection is None:
                return
            try:
                await self._connect_with_retry()
            except CacheConnectionError as exc:
                logger.error(
                    "cache.reconnect_failed",
                    extra={"client": self.name, "error_message": exc.message},
                )

    async def wait_reconnected(self) -> None:
        """Await the in-flight background reconnect, if any."""

        task = self._reconnect_task
        if task is not None:
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute(
        self,
        name: str,
        *args: Any,
        mode: CallMode = CallMode.STRICT,
        **kwargs: Any,
    ) -> CacheResult:
        """Dispatch ``name`` on the backend connection and wrap the outcome.

        Never raises: the returned ``CacheResult`` carries either the value or
        the error. ``mode`` only decides how a failure is logged; callers pick
        ``execute_command`` or ``execute_command_with_fallback`` to decide how
        it is surfaced.
        """

        error: CacheError
        if not self.is_available():
            error = CacheUnavailableError(
                code="cache_unavailable",
                message="Cache backend not available",
                details={"command": name},
            )
            return self._failed(name, error, mode)

        command = getattr(self._connection, name, None)
        if command is None or not callable(command):
            error = CacheCommandError(
                code="cache_unknown_command",
                message=f"Unknown cache command: {name}",
                details={"command": name},
            )
            return self._failed(name, error, mode)

        try:
            value = command(*args, **kwargs)
            if inspect.isawaitable(value):
                value = await value
        except _CONNECTION_ERRORS as exc:
            self._on_connection_lost(exc)
            error = CacheUnavailableError(
                code="cache_connection_lost",
                message=f"Cache connection lost during {name}",
                details={"command": name},
            )
            error.__cause__ = exc
        except RedisError as exc:
            error = CacheCommandError(
                code="cache_command_failed",
                message=f"Cache command {name} failed: {exc}",
                details={"command": name},
            )
            error.__cause__ = exc
        except Exception as exc:
            # Bad arguments and other client-side faults
            error = CacheCommandError(
                code="cache_command_invalid",
                message=f"Cache command {name} could not be run: {exc}",
                details={"command": name},
            )
            error.__cause__ = exc
        else:
            return CacheResult(value=value)

        return self._failed(name, error, mode)

    def _failed(self, name: str, error: CacheError, mode: CallMode) -> CacheResult:
        self.stats.increment_error()
        extra = {
            "client": self.name,
            "command": name,
            "error_code": error.code,
            "error_message": error.message,
        }
        if mode is CallMode.WITH_FALLBACK:
            logger.warning("cache.command_fallback", extra=extra)
        else:
            logger.error("cache.command_failed", extra=extra, exc_info=error.__cause__ is not None)
        return CacheResult(error=error)

    async def execute_command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Run a command, raising ``CacheUnavailableError``/``CacheCommandError`` on failure."""

        result = await self.execute(name, *args, mode=CallMode.STRICT, **kwargs)
        return result.unwrap()

    async def execute_command_with_fallback(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Run a command, returning ``None`` instead of raising on any failure."""

        result = await self.execute(name, *args, mode=CallMode.WITH_FALLBACK, **kwargs)
        return result.value_or_none()

    def pipeline(self, *, transaction: bool = True) -> Any:
        """Return a backend pipeline; callers must check ``is_available`` first."""

        if not self.is_available():
            raise CacheUnavailableError(
                code="cache_unavailable",
                message="Cache backend not available",
                details={"command": "pipeline"},
            )
        return self._connection.pipeline(transaction=transaction)

    def report_connection_error(self, exc: BaseException) -> None:
        """Let a pipeline user report a dropped connection."""

        if isinstance(exc, _CONNECTION_ERRORS):
            self._on_connection_lost(exc)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        """Connectivity plus backend-reported stats and keyspace metrics."""

        if not self.is_available():
            return {"connected": False, "message": "Cache backend not available"}

        try:
            info = await self._connection.info("stats")
            keyspace = await self._connection.info("keyspace")
        except (RedisError, OSError) as exc:
            logger.error(
                "cache.stats_failed",
                extra={"client": self.name, "error_message": str(exc)},
            )
            self.report_connection_error(exc)
            return {"connected": False, "error": str(exc)}

        return {
            "connected": True,
            "info": parse_info(info),
            "keyspace": parse_info(keyspace),
        }
