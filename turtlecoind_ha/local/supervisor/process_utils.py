import sys
import psutil
import asyncio
import logging
import threading
import subprocess
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from turtlecoind_ha.local.config import NodeConfig

log = logging.getLogger(__name__)

PROCESS_NAME = "turtlecoind"


#* --- Command Line ---
def build_node_args(config: NodeConfig) -> List[str]:
    """
    Maps the configuration one-to-one onto TurtleCoind command-line flags.
    Unset values are omitted.

    :param config: The node configuration.
    :return: The argument list, without the executable.
    """
    args: List[str] = []

    def add(flag: str, value: Any = None) -> None:
        args.append(flag)
        if value is not None:
            args.append(str(value))

    add("--data-dir", config.data_dir)
    if config.testnet:
        add("--testnet")
    if config.enable_cors:
        add("--enable-cors", config.enable_cors)
    if config.enable_block_explorer:
        add("--enable_blockexplorer")
    if config.load_checkpoints:
        add("--load-checkpoints", config.load_checkpoints)
    if config.rpc_bind_ip:
        add("--rpc-bind-ip", config.rpc_bind_ip)
    if config.rpc_bind_port:
        add("--rpc-bind-port", config.rpc_bind_port)
    if config.p2p_bind_ip:
        add("--p2p-bind-ip", config.p2p_bind_ip)
    if config.p2p_bind_port:
        add("--p2p-bind-port", config.p2p_bind_port)
    if config.p2p_external_port:
        add("--p2p-external-port", config.p2p_external_port)
    if config.allow_local_ip:
        add("--allow-local-ip")
    for peer in config.peers:
        add("--add-peer", peer)
    for node in config.priority_nodes:
        add("--add-priority-node", node)
    for node in config.exclusive_nodes:
        add("--add-exclusive-node", node)
    if config.seed_node:
        add("--seed-node", config.seed_node)
    if config.hide_my_port:
        add("--hide-my-port")
    if config.db_threads:
        add("--db-threads", config.db_threads)
    if config.db_max_open_files:
        add("--db-max-open-files", config.db_max_open_files)
    if config.db_write_buffer_size:
        add("--db-write-buffer-size", config.db_write_buffer_size)
    if config.db_read_cache_size:
        add("--db-read-cache-size", config.db_read_cache_size)
    return args


def build_command(config: NodeConfig) -> List[str]:
    return [str(config.path)] + build_node_args(config)


#* --- Process Creation ---
@dataclass
class ProcessHandlers:
    """Callbacks the supervisor receives from the process. Always invoked on the event loop."""
    on_line: Callable[[str], None]
    on_exit: Callable[[Optional[int]], None]
    on_error: Callable[[BaseException], None]


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


class NodeProcess:
    """
    The OS process handle of one daemon run.

    Output is combined (stderr into stdout) and read line by line on a daemon
    thread; each line, the exit and any read error are forwarded to the
    handlers on the event loop.
    """

    def __init__(self, popen: subprocess.Popen) -> None:
        self.popen = popen
        self.pid = popen.pid

    def is_running(self) -> bool:
        return self.popen.poll() is None

    def write(self, command: str) -> None:
        """
        Sends one newline-terminated command to the daemon console.

        :raises OSError: If the console channel is closed.
        """
        if self.popen.stdin is None:
            raise BrokenPipeError("Daemon console input is not attached.")
        self.popen.stdin.write(f"{command}\n".encode("utf-8"))
        self.popen.stdin.flush()

    def wait(self, timeout: float) -> int:
        """:raises subprocess.TimeoutExpired: If the process is still running after `timeout`."""
        return self.popen.wait(timeout=timeout)

    def kill(self) -> None:
        """Forcefully kills the daemon and any children it spawned."""
        try:
            parent = psutil.Process(self.pid)
            victims = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for proc in victims:
            try:
                log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
                proc.kill()
            except psutil.NoSuchProcess:
                log.debug(f"Process {proc.pid} no longer exists, skipping forceful kill.")
                continue

    def close(self) -> None:
        """Releases the console input pipe once the process is gone."""
        if self.popen.stdin is not None and not self.popen.stdin.closed:
            try:
                self.popen.stdin.close()
            except OSError as e:
                log.debug(f"Ignoring error while closing {PROCESS_NAME} stdin: {e}")

    def start_reader(self, handlers: ProcessHandlers, loop: asyncio.AbstractEventLoop) -> threading.Thread:
        reader = threading.Thread(
            target=_read_pipe,
            args=(self, handlers, loop),
            daemon=True,
            name=f"{PROCESS_NAME}-reader-{self.pid}",
        )
        reader.start()
        return reader


def _deliver(loop: asyncio.AbstractEventLoop, callback: Callable, *args: Any) -> bool:
    """Schedules `callback` on the loop. Returns False once the loop has been closed."""
    try:
        loop.call_soon_threadsafe(callback, *args)
        return True
    except RuntimeError:
        return False


def _read_pipe(process: NodeProcess, handlers: ProcessHandlers, loop: asyncio.AbstractEventLoop) -> None:
    """Target function for the reader thread. Reads output lines until EOF."""
    pipe = process.popen.stdout
    proc_logger = logging.getLogger(f"proc.{PROCESS_NAME}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if not _deliver(loop, handlers.on_line, line):
                return
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {PROCESS_NAME} stream failed: {e}")
        _deliver(loop, handlers.on_error, e)
        return
    finally:
        pipe.close()

    _deliver(loop, handlers.on_exit, process.popen.wait())


def launch_node_process(command: List[str], handlers: ProcessHandlers) -> NodeProcess:
    """
    Spawns the daemon and attaches the output reader. Must be called on the event loop.

    :param command: Executable followed by its arguments.
    :param handlers: Callbacks for output lines, exit and channel errors.
    :return NodeProcess: The live process handle.
    """
    loop = asyncio.get_running_loop()
    popen = subprocess.Popen(
        command,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        cwd=str(Path.home()),
        **_get_popen_creation_flags(),
    )
    process = NodeProcess(popen)
    process.start_reader(handlers, loop)
    log.info(f"{PROCESS_NAME} started with PID: {process.pid}")
    return process
