"""Shared fakes and fixtures for the supervisor tests."""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from turtlecoind_ha.local.config import NodeConfig
from turtlecoind_ha.local.errors import HealthCheckFailure
from turtlecoind_ha.local.supervisor import NodeSignal, NodeSupervisor, SignalKind
from turtlecoind_ha.local.supervisor.process_utils import ProcessHandlers

HELP_BANNER = "help                     Show this help"
SYNC_LINE = "SUCCESSFULLY SYNCHRONIZED WITH THE TURTLECOIN NETWORK."
STARTED_LINE = "P2p server initialized OK"


class FakeProcess:
    """Stands in for NodeProcess. Lines are delivered straight to the handlers on the loop."""

    def __init__(self, command: List[str], handlers: ProcessHandlers) -> None:
        self.command = command
        self.handlers = handlers
        self.pid = 4242
        self.written: List[str] = []
        self.echo_help = True
        self.exit_on_command = True
        self.broken = False
        self.exit_code: Optional[int] = None
        self.killed = False
        self.closed = False

    def write(self, command: str) -> None:
        if self.broken:
            raise BrokenPipeError("console closed")
        self.written.append(command)
        if command == "help" and self.echo_help:
            asyncio.get_running_loop().call_soon(self.handlers.on_line, HELP_BANNER)
        if command == "exit" and self.exit_on_command:
            self.exit_code = 0

    def wait(self, timeout: float) -> int:
        if self.exit_code is None:
            raise subprocess.TimeoutExpired("TurtleCoind", timeout)
        return self.exit_code

    def kill(self) -> None:
        self.killed = True
        self.exit_code = -9

    def close(self) -> None:
        self.closed = True

    def emit(self, line: str) -> None:
        self.handlers.on_line(line)


class FakeRpc:
    """Async RPC double whose answers can be changed between cycles."""

    def __init__(self) -> None:
        self.info: Dict[str, Any] = {"height": 100, "difficulty": 3000, "status": "OK", "network_height": 100}
        self.height: Dict[str, Any] = {"height": 100, "status": "OK"}
        self.transactions: Dict[str, Any] = {"status": "OK"}
        self.failure: Optional[str] = None
        self.delay = 0.0
        self.calls = 0

    async def _answer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failure:
            raise HealthCheckFailure(self.failure)
        return dict(payload)

    async def get_info(self) -> Dict[str, Any]:
        return await self._answer(self.info)

    async def get_height(self) -> Dict[str, Any]:
        return await self._answer(self.height)

    async def get_transactions(self) -> Dict[str, Any]:
        return await self._answer(self.transactions)


class SignalRecorder:
    def __init__(self) -> None:
        self.signals: List[NodeSignal] = []

    def __call__(self, signal: NodeSignal) -> None:
        self.signals.append(signal)

    def kinds(self) -> List[SignalKind]:
        return [s.kind for s in self.signals]

    def of(self, kind: SignalKind) -> List[NodeSignal]:
        return [s for s in self.signals if s.kind is kind]

    async def wait_for(self, kind: SignalKind, count: int = 1, timeout: float = 2.0) -> List[NodeSignal]:
        deadline = asyncio.get_running_loop().time() + timeout
        while len(self.of(kind)) < count:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"Timed out waiting for {count} '{kind.value}' signal(s); got {self.kinds()}")
            await asyncio.sleep(0.005)
        return self.of(kind)


@pytest.fixture
def binary(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "TurtleCoind"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def node_config(tmp_path: Path, binary: Path) -> NodeConfig:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return NodeConfig(
        path=binary,
        data_dir=data_dir,
        polling_interval=0.02,
        timeout=0.05,
        max_polling_failures=3,
        max_deviance=5,
        stale_lock_retry_delay=0.05,
    )


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def spawned() -> List[FakeProcess]:
    return []


@pytest.fixture
def recorder() -> SignalRecorder:
    return SignalRecorder()


@pytest.fixture
def make_supervisor(node_config, rpc, spawned, recorder):
    """Builds supervisors wired to the fake process, the fake RPC and the recorder."""
    def spawn(command, handlers):
        process = FakeProcess(command, handlers)
        spawned.append(process)
        return process

    def factory(config: Optional[NodeConfig] = None) -> NodeSupervisor:
        node = NodeSupervisor(config or node_config, rpc=rpc, spawn=spawn)
        node.signals.subscribe_all(recorder)
        return node

    return factory


@pytest.fixture
def supervisor(make_supervisor) -> NodeSupervisor:
    return make_supervisor()


async def bring_to_monitoring(supervisor: NodeSupervisor, spawned: List[FakeProcess], recorder: SignalRecorder) -> FakeProcess:
    """Starts the supervisor and walks the fake daemon through a corroborated sync."""
    assert supervisor.start()
    process = spawned[-1]
    process.emit(SYNC_LINE)
    await recorder.wait_for(SignalKind.SYNCED)
    await recorder.wait_for(SignalKind.READY)
    return process
