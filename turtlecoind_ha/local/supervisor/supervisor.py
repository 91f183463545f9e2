import asyncio
import logging
from functools import partial
from typing import Any, Callable, List, Optional

from turtlecoind_ha.local.config import NodeConfig
from turtlecoind_ha.local.errors import FatalConfigError, HealthCheckFailure, ProcessTermination
from turtlecoind_ha.local.rpc_client import NodeRpcClient
from turtlecoind_ha.local.supervisor import sanitation, shutdown
from turtlecoind_ha.local.supervisor.classifier import OutputClassifier, OutputMarker
from turtlecoind_ha.local.supervisor.events import Listener, SignalDispatcher, SignalKind
from turtlecoind_ha.local.supervisor.health import PROBE_TIMEOUT, CycleOutcome, CycleResult, HealthMonitor
from turtlecoind_ha.local.supervisor.liveness import LivenessDebouncer
from turtlecoind_ha.local.supervisor.process_utils import (
    PROCESS_NAME, NodeProcess, ProcessHandlers, build_command, launch_node_process,
)
from turtlecoind_ha.local.supervisor.state import MONITORED_STATES, LifecycleState, SupervisorState

log = logging.getLogger(__name__)

HELP_COMMAND = "help"

SpawnFunction = Callable[[List[str], ProcessHandlers], NodeProcess]


class NodeSupervisor:
    """
    Supervises a single TurtleCoind process.

    Launches the daemon, follows its console output, validates its health
    once it reports a corroborated sync, and publishes what it sees as
    signals. The supervisor never restarts the daemon by itself; the owner
    reacts to `down`/`stopped` by calling stop() and start().

    All methods must be called on the event loop that runs the supervisor.
    """

    def __init__(
        self,
        config: NodeConfig,
        rpc: Optional[NodeRpcClient] = None,
        spawn: Optional[SpawnFunction] = None,
        classifier: Optional[OutputClassifier] = None,
        signals: Optional[SignalDispatcher] = None,
    ) -> None:
        """
        :param config: The node configuration.
        :param rpc: Client for the daemon's RPC interface. Built from `config` if omitted.
        :param spawn: Process factory. Defaults to launching the real binary.
        :param classifier: Console output classifier. Defaults to the TurtleCoind markers.
        :param signals: Dispatcher to publish on. A private one is created if omitted.
        """
        self.config = config
        self.rpc = rpc or NodeRpcClient(config.rpc_query_ip, config.rpc_bind_port, config.timeout)
        self.classifier = classifier or OutputClassifier()
        self.signals = signals or SignalDispatcher()
        self._spawn = spawn or launch_node_process

        self._state = SupervisorState()
        self._process: Optional[NodeProcess] = None
        self._run_id = 0
        self.proc_log = logging.getLogger(f"proc.{PROCESS_NAME}")

        self.debouncer = LivenessDebouncer(self._state.liveness, config.down_window, self._declare_down)
        self.monitor = HealthMonitor(
            self.rpc,
            probe=self._probe,
            on_result=self._on_cycle_result,
            polling_interval=config.polling_interval,
            check_height=config.check_height,
            max_deviance=config.max_deviance,
        )

    #* --- Public Surface ---
    @property
    def state(self) -> LifecycleState:
        return self._state.lifecycle

    @property
    def is_running(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def on(self, kind: SignalKind, listener: Listener) -> Callable[[], None]:
        """Subscribes to one signal kind. Returns the unsubscribe callable."""
        return self.signals.subscribe(kind, listener)

    def _emit(self, kind: SignalKind, payload: Any = None) -> None:
        self.signals.emit(kind, payload)

    def start(self) -> bool:
        """
        Sanitizes the data directory and launches the daemon.

        :return: True if a process was spawned. False if startup was refused,
                 failed fatally or was rescheduled.
        """
        self._cancel_start_retry()
        if self._process is not None or self._state.lifecycle is not LifecycleState.STOPPED:
            log.warning(f"TurtleCoind is already running (state: {self._state.lifecycle.value}). Ignoring start().")
            return False

        try:
            verdict = sanitation.sanitize(
                self.config,
                info=partial(self._emit, SignalKind.INFO),
                error=partial(self._emit, SignalKind.ERROR),
            )
        except FatalConfigError as e:
            log.critical(f"Cannot start TurtleCoind: {e}")
            self._emit(SignalKind.ERROR, e)
            return False
        except OSError as e:
            failure = FatalConfigError(f"Could not prepare data directory '{self.config.data_dir}': {e}")
            log.critical(str(failure))
            self._emit(SignalKind.ERROR, failure)
            return False

        if verdict is sanitation.SanitationVerdict.RETRY:
            self._schedule_start_retry()
            return False

        command = build_command(self.config)
        self._reset_for_launch()
        run_id = self._run_id
        handlers = ProcessHandlers(
            on_line=partial(self._on_line, run_id),
            on_exit=partial(self._on_exit, run_id),
            on_error=partial(self._on_channel_error, run_id),
        )
        try:
            self._process = self._spawn(command, handlers)
        except OSError as e:
            self._state.lifecycle = LifecycleState.STOPPED
            failure = FatalConfigError(f"Could not launch TurtleCoind: {e}")
            log.critical(str(failure), exc_info=True)
            self._emit(SignalKind.ERROR, failure)
            return False

        self._emit(SignalKind.START, " ".join(command[1:]))
        log.info("TurtleCoind is attempting to synchronize with the network...")
        return True

    async def stop(self) -> Optional[int]:
        """
        Stops the daemon: cancels monitoring and timers, sends `exit`, and
        kills the process if it is still alive after twice the RPC timeout.

        :return: The daemon's exit code, or None if it was not running or could not be reaped.
        """
        self._cancel_start_retry()
        if self._process is None:
            log.debug("TurtleCoind is not running. Nothing to stop.")
            return None
        if self._state.stopping:
            log.debug("TurtleCoind is already stopping.")
            return None

        self._state.stopping = True
        self._teardown_monitoring()
        process = self._process
        try:
            exit_code = await shutdown.graceful_shutdown_sequence(process, self.config.shutdown_grace_period)
        finally:
            self._process = None
            self._state.lifecycle = LifecycleState.STOPPED
            self._state.stopping = False

        log.info(f"TurtleCoind stopped with exit code {exit_code}.")
        self._emit(SignalKind.STOPPED, exit_code)
        return exit_code

    def write(self, command: str) -> bool:
        """
        Sends a console command to the daemon.

        :return: True if the command was written. A broken channel is reported as `down`.
        """
        if self._process is None:
            log.warning(f"Cannot send '{command}': TurtleCoind is not running.")
            return False
        try:
            self._process.write(command)
            return True
        except OSError as e:
            self._on_channel_error(self._run_id, e)
            return False

    #* --- Launch Bookkeeping ---
    def _reset_for_launch(self) -> None:
        self._run_id += 1
        self._state.lifecycle = LifecycleState.STARTING
        self._state.stopping = False
        self._state.probe_echo.clear()
        self.debouncer.reset()

    def _schedule_start_retry(self) -> None:
        if self._state.retry_start_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._state.retry_start_handle = loop.call_later(self.config.stale_lock_retry_delay, self.start)

    def _cancel_start_retry(self) -> None:
        if self._state.retry_start_handle is not None:
            self._state.retry_start_handle.cancel()
            self._state.retry_start_handle = None

    def _teardown_monitoring(self) -> None:
        self.monitor.disarm()
        self.debouncer.cancel()
        self._cancel_sync_retry()
        task = self._state.sync_check_task
        if task is not None and not task.done():
            task.cancel()
        self._state.sync_check_task = None

    def _is_current(self, run_id: int) -> bool:
        return run_id == self._run_id and self._process is not None

    #* --- Console Output ---
    def _on_line(self, run_id: int, line: str) -> None:
        if not self._is_current(run_id):
            return
        self.proc_log.info(line)
        self._emit(SignalKind.DATA, line)

        marker = self.classifier.classify(line)
        if marker is OutputMarker.SYNCED:
            self._on_sync_claim()
        elif marker is OutputMarker.STARTED:
            if self._state.lifecycle is LifecycleState.STARTING:
                self._emit(SignalKind.STARTED)
        elif marker is OutputMarker.HELP:
            self._state.probe_echo.set()

    def _on_sync_claim(self) -> None:
        if self._state.lifecycle is not LifecycleState.STARTING:
            log.debug(f"Ignoring sync claim in state '{self._state.lifecycle.value}'.")
            return
        self._begin_corroboration()

    def _begin_corroboration(self) -> None:
        self._cancel_sync_retry()
        self._state.lifecycle = LifecycleState.WAITING_FOR_SYNC_CONFIRMATION
        loop = asyncio.get_running_loop()
        self._state.sync_check_task = loop.create_task(self._corroborate_sync(self._run_id), name="SyncCorroboration")

    def _schedule_sync_retry(self, run_id: int) -> None:
        """Corroborates again after one polling interval while the daemon stays in STARTING."""
        loop = asyncio.get_running_loop()
        self._state.sync_retry_handle = loop.call_later(
            self.config.polling_interval, self._retry_corroboration, run_id,
        )

    def _retry_corroboration(self, run_id: int) -> None:
        self._state.sync_retry_handle = None
        if self._is_current(run_id) and self._state.lifecycle is LifecycleState.STARTING:
            self._begin_corroboration()

    def _cancel_sync_retry(self) -> None:
        if self._state.sync_retry_handle is not None:
            self._state.sync_retry_handle.cancel()
            self._state.sync_retry_handle = None

    async def _corroborate_sync(self, run_id: int) -> None:
        """Confirms a sync claim by comparing the local and network heights."""
        try:
            info = await self.rpc.get_info()
        except HealthCheckFailure as e:
            log.warning(f"Could not corroborate sync claim: {e}")
            info = None
        except Exception as e:
            log.error(f"Unexpected error while corroborating sync claim: {e}", exc_info=True)
            info = None

        if not self._is_current(run_id) or self._state.lifecycle is not LifecycleState.WAITING_FOR_SYNC_CONFIRMATION:
            return

        height = info.get("height") if info else None
        network_height = info.get("network_height") if info else None
        if height is None or height != network_height:
            if info is not None:
                log.info(f"TurtleCoind claims to be synchronized but is at height {height} of {network_height}. Waiting...")
            self._state.lifecycle = LifecycleState.STARTING
            self._schedule_sync_retry(run_id)
            return

        self._state.lifecycle = LifecycleState.SYNCED
        log.info(f"TurtleCoind is synchronized with the network at height {height}.")
        self._emit(SignalKind.SYNCED)
        self.monitor.arm()

    #* --- Health Checking ---
    async def _probe(self) -> bool:
        """Sends `help` to the console and waits for the banner echo."""
        self._state.probe_echo.clear()
        if not self.write(HELP_COMMAND):
            return False
        try:
            await asyncio.wait_for(self._state.probe_echo.wait(), timeout=PROBE_TIMEOUT)
            return True
        except asyncio.TimeoutError:
            return False

    def _on_cycle_result(self, result: CycleResult) -> None:
        if self._state.lifecycle not in MONITORED_STATES:
            log.debug(f"Discarding health result in state '{self._state.lifecycle.value}'.")
            return

        if result.outcome is CycleOutcome.READY:
            self.debouncer.record_success()
            self._state.lifecycle = LifecycleState.MONITORING
            self._emit(SignalKind.READY, result.snapshot)
        elif result.outcome is CycleOutcome.DESYNCED:
            self.debouncer.record_success()
            self._state.lifecycle = LifecycleState.DESYNCED
            report = result.desync
            log.warning(f"TurtleCoind is out of sync: height {report.height}, "
                        f"network height {report.network_height} (deviance {report.deviance}).")
            self._emit(SignalKind.DESYNC, report)
        else:
            self.debouncer.record_failure()
            log.warning(str(result.error))
            self._emit(SignalKind.ERROR, result.error)

    def _declare_down(self) -> None:
        if self._process is None or self._state.stopping:
            return
        self._emit(SignalKind.DOWN)

    #* --- Process Termination ---
    def _on_channel_error(self, run_id: int, error: BaseException) -> None:
        if not self._is_current(run_id) or self._state.stopping:
            return
        failure = ProcessTermination(f"Error in child process...: {error}")
        log.error(str(failure))
        self._teardown_monitoring()
        self._emit(SignalKind.ERROR, failure)
        if not self._state.liveness.down_declared:
            self._state.liveness.down_declared = True
            self._emit(SignalKind.DOWN)

    def _on_exit(self, run_id: int, exit_code: Optional[int]) -> None:
        if not self._is_current(run_id) or self._state.stopping:
            return
        log.error(f"TurtleCoind exited unexpectedly with code {exit_code}.")
        self._teardown_monitoring()
        self._process.close()
        self._process = None
        self._state.lifecycle = LifecycleState.STOPPED

        if not self._state.liveness.down_declared:
            self._state.liveness.down_declared = True
            self._emit(SignalKind.DOWN)
        self._emit(SignalKind.STOPPED, exit_code)
