"""Shared fakes: no test touches a real socket or RPC endpoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from sentinel_shield.data.collectors.monitor_connection import MonitorSocket, MonitorTransport
from sentinel_shield.errors import MonitorConnectionError
from sentinel_shield.inference.chain import PauseChain


CONTRACT = "0x" + "c" * 40
ATTACKER = "0x" + "a" * 40
SENDER = "0x" + "1" * 40


class FakeChain(PauseChain):
    """In-memory pause primitive."""

    def __init__(self, identity: str = "0x" + "9" * 40):
        self.identity = identity
        self.paused: dict[str, bool] = {}
        self.roles: set[str] = set()
        self.submissions: list[tuple[str, str]] = []
        self.submit_error: Exception | None = None
        self.read_error: Exception | None = None
        self.mined: bool | None = True
        self.pause_on_submit = True

    @property
    def executor_identity(self) -> str:
        return self.identity

    async def is_paused(self, contract_address: str) -> bool:
        if self.read_error is not None:
            raise self.read_error
        return self.paused.get(contract_address.lower(), False)

    async def has_pauser_role(self, contract_address: str) -> bool:
        return contract_address.lower() in self.roles

    async def submit_pause(self, contract_address: str, vuln_reference: str) -> str:
        await asyncio.sleep(0)
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((contract_address, vuln_reference))
        if self.pause_on_submit and self.mined:
            self.paused[contract_address.lower()] = True
        return "0x" + f"{len(self.submissions):064x}"

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool | None:
        return self.mined


class FakeSocket(MonitorSocket):
    def __init__(self, frames: list[Any]):
        self._frames = list(frames)
        self.closed = False

    async def receive(self) -> str | None:
        await asyncio.sleep(0)
        if not self._frames:
            return None
        frame = self._frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame if isinstance(frame, str) else json.dumps(frame)

    async def close(self) -> None:
        self.closed = True


class FakeTransport(MonitorTransport):
    """Each open() consumes one script entry.

    A list is served as frames followed by a close, an exception is raised
    from open(), and "hang" never completes. Once the scripts run out every
    open() hangs.
    """

    def __init__(self, scripts: list[Any]):
        self.scripts = list(scripts)
        self.opens = 0
        self.sockets: list[FakeSocket] = []

    async def open(self, url: str) -> MonitorSocket:
        self.opens += 1
        script = self.scripts.pop(0) if self.scripts else "hang"
        if script == "hang":
            await asyncio.Event().wait()
        if isinstance(script, Exception):
            raise script
        socket = FakeSocket(script)
        self.sockets.append(socket)
        return socket


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def connection_refused():
    return MonitorConnectionError("connection refused")
