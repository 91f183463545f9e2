import asyncio
import logging
import subprocess
from typing import Optional, Protocol

log = logging.getLogger(__name__)

EXIT_COMMAND = "exit"


class StoppableProcess(Protocol):
    pid: int

    def write(self, command: str) -> None: ...
    def wait(self, timeout: float) -> int: ...
    def kill(self) -> None: ...
    def close(self) -> None: ...


def _send_exit_command(process: StoppableProcess) -> None:
    """Asks the daemon to save its state and exit."""
    try:
        process.write(EXIT_COMMAND)
        log.info(f"Graceful '{EXIT_COMMAND}' command sent to TurtleCoind (PID {process.pid}).")
    except OSError as e:
        log.warning(f"Could not send '{EXIT_COMMAND}' to TurtleCoind (PID {process.pid}): {e}")


def _wait_for_exit(process: StoppableProcess, timeout: float) -> Optional[int]:
    """Blocks until the process exits. Returns its exit code, or None on timeout."""
    try:
        return process.wait(timeout)
    except subprocess.TimeoutExpired:
        return None


async def graceful_shutdown_sequence(process: StoppableProcess, grace_period: float) -> Optional[int]:
    """
    Runs the full shutdown sequence: exit command, wait, then forceful kill.

    :param process: The daemon handle.
    :param grace_period: Seconds to wait for a clean exit before killing.
    :return: The exit code, or None if the process could not be reaped.
    """
    loop = asyncio.get_running_loop()
    _send_exit_command(process)

    exit_code = await loop.run_in_executor(None, _wait_for_exit, process, grace_period)
    if exit_code is None:
        log.warning(f"TurtleCoind did not exit within {grace_period:.1f}s. Forcing shutdown...")
        process.kill()
        exit_code = await loop.run_in_executor(None, _wait_for_exit, process, grace_period)
        if exit_code is None:
            log.error(f"TurtleCoind (PID {process.pid}) survived a forceful kill.")

    process.close()
    return exit_code
