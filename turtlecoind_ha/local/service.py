import signal
import asyncio
import logging
from typing import Optional, Set

from turtlecoind_ha.local.config import NodeConfig
from turtlecoind_ha.local.errors import FatalConfigError, HealthCheckFailure
from turtlecoind_ha.local.supervisor import NodeSignal, NodeSupervisor, SignalKind

log = logging.getLogger(__name__)


class NodeService:
    """
    The owner of a NodeSupervisor: reports every signal in the log and keeps
    the daemon alive by restarting it.

    On `down` the daemon is stopped; on `stopped` it is started again, unless
    the service itself is shutting down. A fatal configuration error ends the
    service.
    """

    def __init__(self, config: NodeConfig, supervisor: Optional[NodeSupervisor] = None) -> None:
        self.supervisor = supervisor or NodeSupervisor(config)
        self.shutdown_requested = asyncio.Event()
        self.fatal_error: Optional[FatalConfigError] = None
        self.restarts = 0
        self._tasks: Set[asyncio.Task] = set()

        handlers = {
            SignalKind.START: self._on_start,
            SignalKind.STARTED: self._on_started,
            SignalKind.SYNCED: self._on_synced,
            SignalKind.READY: self._on_ready,
            SignalKind.DESYNC: self._on_desync,
            SignalKind.DOWN: self._on_down,
            SignalKind.STOPPED: self._on_stopped,
            SignalKind.INFO: self._on_info,
            SignalKind.ERROR: self._on_error,
        }
        self._unsubscribe = [self.supervisor.on(kind, handler) for kind, handler in handlers.items()]

    def _on_start(self, sig: NodeSignal) -> None:
        log.info(f"TurtleCoind has started... {sig.payload}")

    def _on_started(self, sig: NodeSignal) -> None:
        log.info("TurtleCoind has initialized its P2P server.")

    def _on_synced(self, sig: NodeSignal) -> None:
        log.info("TurtleCoind is synchronized with the network...")

    def _on_ready(self, sig: NodeSignal) -> None:
        info = sig.payload
        log.info(f"TurtleCoind is waiting for connections at {info.height} @ {info.difficulty} - {info.hash_rate} H/s")

    def _on_desync(self, sig: NodeSignal) -> None:
        report = sig.payload
        log.warning(f"TurtleCoind is {report.deviance} blocks away from the network "
                    f"({report.height} / {report.network_height})...")

    def _on_down(self, sig: NodeSignal) -> None:
        if not self.supervisor.is_running:
            return
        log.warning("TurtleCoind is not responding... stopping process...")
        self._spawn(self.supervisor.stop())

    def _on_stopped(self, sig: NodeSignal) -> None:
        if self.shutdown_requested.is_set():
            log.info(f"TurtleCoind has closed (exit code {sig.payload}).")
            return
        self.restarts += 1
        log.warning(f"TurtleCoind has closed (exit code {sig.payload})... restarting process (restart #{self.restarts})...")
        self.supervisor.start()

    def _on_info(self, sig: NodeSignal) -> None:
        log.info(sig.payload)

    def _on_error(self, sig: NodeSignal) -> None:
        error = sig.payload
        if isinstance(error, FatalConfigError):
            log.critical(f"Fatal configuration error: {error}. Shutting down.")
            self.fatal_error = error
            self.request_shutdown()
        elif isinstance(error, HealthCheckFailure):
            log.debug(f"Health check failed: {error}")
        else:
            log.error(str(error))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def request_shutdown(self) -> None:
        if not self.shutdown_requested.is_set():
            log.info("Shutdown requested.")
            self.shutdown_requested.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support signal handlers.
                log.debug(f"Cannot install handler for {sig.name} on this platform.")

    async def run(self, install_signal_handlers: bool = True) -> int:
        """
        Starts the daemon and keeps it running until shutdown is requested.

        :param install_signal_handlers: Stop on SIGINT/SIGTERM.
        :return: The process exit status for the service (1 after a fatal error).
        """
        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            self._install_signal_handlers(loop)

        self.supervisor.start()
        await self.shutdown_requested.wait()

        await self.supervisor.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        return 1 if self.fatal_error is not None else 0
