from __future__ import annotations

import asyncio
import inspect
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable

import aiohttp
import structlog

from sentinel_shield.config import ConnectionConfig
from sentinel_shield.errors import MonitorConnectionError
from sentinel_shield.events import ConnectionState, ConnectionStatus
from sentinel_shield.inference.alerts import Notice, NoticeKind, Notifier


logger = structlog.get_logger()


MessageHandler = Callable[[dict[str, Any]], Any]
Disposer = Callable[[], Awaitable[None]]


class MonitorSocket(ABC):
    """One open connection to the monitoring service."""

    @abstractmethod
    async def receive(self) -> str | None:
        """Next text frame, or None once the peer has closed."""

    @abstractmethod
    async def close(self) -> None:
        pass


class MonitorTransport(ABC):
    @abstractmethod
    async def open(self, url: str) -> MonitorSocket:
        pass

    async def close(self) -> None:
        pass


class AiohttpMonitorSocket(MonitorSocket):
    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    async def receive(self) -> str | None:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def close(self) -> None:
        await self._ws.close()


class AiohttpMonitorTransport(MonitorTransport):
    def __init__(self, session: aiohttp.ClientSession | None = None):
        self._session = session
        self._owns_session = session is None

    async def open(self, url: str) -> MonitorSocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            ws = await self._session.ws_connect(url, heartbeat=30)
        except (aiohttp.ClientError, OSError) as e:
            raise MonitorConnectionError(f"Failed to connect to {url}: {e}") from e
        return AiohttpMonitorSocket(ws)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class SlidingWindowRateLimiter:
    """Admits at most ``max_messages`` per ``window`` seconds; the rest are dropped."""

    def __init__(self, max_messages: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.max_messages = max_messages
        self.window = window
        self._clock = clock
        self._timestamps: deque[float] = deque()

    def allow(self) -> bool:
        now = self._clock()
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()
        if len(self._timestamps) >= self.max_messages:
            return False
        self._timestamps.append(now)
        return True

    def reset(self) -> None:
        self._timestamps.clear()


class ConnectionManager:
    """Owns the connection to the remote monitoring service.

    A single supervisor task runs connect, read and reconnect cycles, so at
    most one live socket exists at any time. ``reconnect_attempts`` grows by
    one per failed cycle and resets when the first message arrives on a new
    connection. Disconnects are announced once per outage.
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        transport: MonitorTransport | None = None,
        notifier: Notifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ConnectionConfig()
        self.transport = transport or AiohttpMonitorTransport()
        self.notifier = notifier
        self._sleep = sleep
        self._clock = clock
        self._state = ConnectionState()
        self._handler: MessageHandler | None = None
        self._socket: MonitorSocket | None = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._rate_limiter = SlidingWindowRateLimiter(
            self.config.rate_limit_max_messages,
            self.config.rate_limit_window,
            clock=clock,
        )
        self._outage_announced = False
        self._had_outage = False
        self._stats = {
            "connects": 0,
            "failures": 0,
            "received": 0,
            "dropped": 0,
            "invalid": 0,
        }
        self.recent_delays: deque[float] = deque(maxlen=32)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_message(self, handler: MessageHandler) -> None:
        """Register the sole consumer; replaces any previous handler."""
        self._handler = handler

    def backoff_delay(self, attempts: int) -> float:
        c = self.config
        return min(c.base_delay * c.backoff_factor ** attempts, c.max_delay)

    async def connect(self) -> Disposer:
        if not self.is_running:
            self._closing = False
            self._task = asyncio.create_task(self._supervise())
            logger.info("monitor_connection_started", url=self.config.ws_url)
        return self.disconnect

    async def disconnect(self) -> None:
        """Stop the supervisor and release the socket.

        Cleanup runs even when the caller is itself cancelled; only the
        cancellation delivered to the supervisor is absorbed here.
        """
        self._closing = True
        task, self._task = self._task, None
        try:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
        finally:
            await self._close_socket()
            await self.transport.close()
            self._state.status = ConnectionStatus.IDLE
            logger.info("monitor_connection_stopped", stats=self._stats)

    async def _supervise(self) -> None:
        while not self._closing:
            await self._debounce()
            if self._closing:
                return
            self._state.status = ConnectionStatus.CONNECTING
            self._state.last_connect_attempt_at = self._clock()

            try:
                async with asyncio.timeout(self.config.connect_timeout):
                    self._socket = await self.transport.open(self.config.ws_url)
            except TimeoutError:
                self._on_failure("connect_timeout")
            except (MonitorConnectionError, aiohttp.ClientError, OSError) as e:
                self._on_failure(str(e))
            else:
                if self._closing:
                    await self._close_socket()
                    return
                self._on_open()
                await self._read_loop()
                await self._close_socket()
                if self._closing:
                    return
                self._on_failure("connection_closed")

            delay = self.backoff_delay(self._state.reconnect_attempts)
            self._state.reconnect_attempts += 1
            self.recent_delays.append(delay)
            logger.debug(
                "monitor_reconnect_scheduled",
                delay=delay,
                attempts=self._state.reconnect_attempts,
            )
            await self._sleep(delay)

    async def _debounce(self) -> None:
        last = self._state.last_connect_attempt_at
        if last is None:
            return
        elapsed = self._clock() - last
        if elapsed < self.config.min_reconnect_interval:
            wait = self.config.min_reconnect_interval - elapsed
            logger.debug("monitor_connect_deferred", wait=wait)
            await self._sleep(wait)

    def _on_open(self) -> None:
        self._state.status = ConnectionStatus.CONNECTED
        self._stats["connects"] += 1
        self._rate_limiter.reset()
        logger.info("monitor_connected", url=self.config.ws_url)
        if self._had_outage:
            self._had_outage = False
            self._outage_announced = False
            self._notify(Notice(NoticeKind.RECONNECTED, "Reconnected to monitoring service"))

    def _on_failure(self, reason: str) -> None:
        self._state.status = ConnectionStatus.ERROR
        self._stats["failures"] += 1
        self._had_outage = True
        logger.warning("monitor_connection_failed", reason=reason, attempts=self._state.reconnect_attempts)
        if not self._outage_announced:
            self._outage_announced = True
            self._notify(
                Notice(
                    NoticeKind.DISCONNECTED,
                    "Monitoring service disconnected, retrying in background",
                    context={"reason": reason},
                )
            )

    async def _read_loop(self) -> None:
        first = True
        try:
            while self._socket is not None:
                raw = await self._socket.receive()
                if raw is None:
                    return

                self._stats["received"] += 1
                if first:
                    first = False
                    self._state.reconnect_attempts = 0

                if not self._rate_limiter.allow():
                    self._stats["dropped"] += 1
                    logger.debug("monitor_message_rate_limited")
                    continue

                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    self._stats["invalid"] += 1
                    logger.debug("monitor_message_invalid", error=str(e))
                    continue
                if not isinstance(data, dict):
                    self._stats["invalid"] += 1
                    continue

                await self._dispatch(data)
        except MonitorConnectionError as e:
            logger.warning("monitor_read_failed", error=str(e))
        except aiohttp.ClientError as e:
            logger.warning("monitor_read_failed", error=str(e))

    async def _dispatch(self, data: dict[str, Any]) -> None:
        if self._handler is None:
            return
        try:
            result = self._handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("message_handler_error", error=str(e), type=data.get("type"))

    async def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except (MonitorConnectionError, aiohttp.ClientError, OSError) as e:
                logger.debug("monitor_socket_close_failed", error=str(e))

    def _notify(self, notice: Notice) -> None:
        if self.notifier is not None:
            self.notifier.notify(notice)

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats, **self._state.to_dict()}

    async def __aenter__(self) -> ConnectionManager:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()
