import math
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from turtlecoind_ha.local.errors import HealthCheckFailure
from turtlecoind_ha.local.rpc_client import NodeRpcClient

log = logging.getLogger(__name__)

BLOCK_TARGET_TIME = 30  # seconds per block on the TurtleCoin network
PROBE_TIMEOUT = 1.0     # seconds to wait for the help banner echo

_MISSING = object()


@dataclass(frozen=True)
class HealthSnapshot:
    height: int
    difficulty: int
    status: str
    network_height: int
    hash_rate: int


@dataclass(frozen=True)
class DesyncReport:
    height: int
    network_height: int
    deviance: int


class CycleOutcome(Enum):
    READY = "ready"
    DESYNCED = "desynced"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    snapshot: Optional[HealthSnapshot] = None
    desync: Optional[DesyncReport] = None
    error: Optional[HealthCheckFailure] = None

    @property
    def is_liveness_success(self) -> bool:
        """Ready and desynced cycles both prove the daemon answered."""
        return self.outcome is not CycleOutcome.FAILED


def derive_hash_rate(difficulty: int) -> int:
    """Global hash rate estimate, rounded half-up."""
    return int(math.floor(difficulty / BLOCK_TARGET_TIME + 0.5))


def _require_int(data: Dict[str, Any], key: str, method: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HealthCheckFailure(f"Daemon is returning inconsistent results: /{method} has no numeric '{key}'")
    return int(value)


def build_snapshot(info: Dict[str, Any]) -> HealthSnapshot:
    """
    Extracts the per-cycle snapshot from a `getinfo` response.

    :raises HealthCheckFailure: If a consumed field is missing or not numeric.
    """
    difficulty = _require_int(info, "difficulty", "getinfo")
    return HealthSnapshot(
        height=_require_int(info, "height", "getinfo"),
        difficulty=difficulty,
        status=str(info.get("status", "")),
        network_height=_require_int(info, "network_height", "getinfo"),
        hash_rate=derive_hash_rate(difficulty),
    )


def check_consistency(info: Dict[str, Any], height: Dict[str, Any], transactions: Dict[str, Any]) -> None:
    """
    Cross-checks the three RPC answers of one cycle.

    getinfo and getheight must agree on `height` and `status`, and
    gettransactions must report the same `status`. A missing field never matches.

    :raises HealthCheckFailure: On any mismatch.
    """
    info_height = info.get("height", _MISSING)
    info_status = info.get("status", _MISSING)
    height_height = height.get("height", _MISSING)
    height_status = height.get("status", _MISSING)
    tx_status = transactions.get("status", _MISSING)

    if _MISSING in (info_height, info_status, height_height, height_status, tx_status):
        raise HealthCheckFailure("Daemon is returning inconsistent results: missing height or status")
    if info_height != height_height or info_status != height_status or height_status != tx_status:
        raise HealthCheckFailure(
            f"Daemon is returning inconsistent results: getinfo(height={info_height}, status={info_status}) "
            f"getheight(height={height_height}, status={height_status}) gettransactions(status={tx_status})"
        )


def measure_desync(snapshot: HealthSnapshot, max_deviance: int) -> Optional[DesyncReport]:
    """Returns a report when the local height trails or leads the network by more than `max_deviance`."""
    deviance = abs(snapshot.height - snapshot.network_height)
    if deviance > max_deviance:
        return DesyncReport(snapshot.height, snapshot.network_height, deviance)
    return None


def _as_failure(error: BaseException) -> HealthCheckFailure:
    if isinstance(error, HealthCheckFailure):
        return HealthCheckFailure(f"Daemon is not passing checks...: {error}")
    return HealthCheckFailure(f"Daemon is not passing checks...: {error!r}")


def evaluate_cycle(results: Sequence[Any], check_height: bool, max_deviance: int) -> CycleResult:
    """
    Computes the verdict of one cycle from its four gathered results.

    :param results: (getinfo, getheight, gettransactions, probe) as returned by
                    `asyncio.gather(..., return_exceptions=True)`.
    :param check_height: Whether the desync check is enabled.
    :param max_deviance: Largest tolerated height deviance.
    :return CycleResult: READY, DESYNCED or FAILED. Failed results carry no snapshot.
    """
    info, height, transactions, probe_ok = results

    for result in results:
        if isinstance(result, BaseException):
            return CycleResult(CycleOutcome.FAILED, error=_as_failure(result))
    if not probe_ok:
        return CycleResult(CycleOutcome.FAILED, error=HealthCheckFailure("Daemon is unresponsive"))

    try:
        snapshot = build_snapshot(info)
    except HealthCheckFailure as e:
        return CycleResult(CycleOutcome.FAILED, error=e)

    inconsistency: Optional[HealthCheckFailure] = None
    try:
        check_consistency(info, height, transactions)
    except HealthCheckFailure as e:
        inconsistency = e

    desync = measure_desync(snapshot, max_deviance) if check_height else None
    if desync is not None:
        # Desync outranks inconsistency: the daemon answered, it is just behind.
        return CycleResult(CycleOutcome.DESYNCED, desync=desync, error=inconsistency)
    if inconsistency is not None:
        return CycleResult(CycleOutcome.FAILED, error=inconsistency)
    return CycleResult(CycleOutcome.READY, snapshot=snapshot)


class HealthMonitor:
    """
    Runs a health cycle every `polling_interval` seconds while armed.

    Each cycle queries getinfo, getheight and gettransactions and sends the
    liveness probe concurrently, then hands its CycleResult to `on_result`.
    A tick that finds the previous cycle still running is skipped.
    """

    def __init__(
        self,
        rpc: NodeRpcClient,
        probe: Callable[[], Awaitable[bool]],
        on_result: Callable[[CycleResult], None],
        polling_interval: float,
        check_height: bool = True,
        max_deviance: int = 5,
    ) -> None:
        self.rpc = rpc
        self.probe = probe
        self.on_result = on_result
        self.polling_interval = polling_interval
        self.check_height = check_height
        self.max_deviance = max_deviance
        self.skipped_ticks = 0
        self._ticker: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def arm(self) -> None:
        if self.armed:
            return
        log.info(f"Health monitor armed, checking every {self.polling_interval:.1f}s.")
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop(), name="HealthMonitorTicker")

    def disarm(self) -> None:
        """Cancels the interval and any cycle still in flight."""
        for task in (self._ticker, self._cycle):
            if task is not None and not task.done():
                task.cancel()
        if self._ticker is not None:
            log.info("Health monitor disarmed.")
        self._ticker = None
        self._cycle = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.polling_interval)
            self.tick()

    def tick(self) -> None:
        if self.cycle_in_flight:
            self.skipped_ticks += 1
            log.debug("Previous health cycle still running. Skipping this tick.")
            return
        self._cycle = asyncio.get_running_loop().create_task(self._run_and_report(), name="HealthCycle")

    async def _run_and_report(self) -> None:
        result = await self.run_cycle()
        try:
            self.on_result(result)
        except Exception as e:
            log.error(f"Failed to process health cycle result: {e}", exc_info=True)

    async def run_cycle(self) -> CycleResult:
        results = await asyncio.gather(
            self.rpc.get_info(),
            self.rpc.get_height(),
            self.rpc.get_transactions(),
            self.probe(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
        return evaluate_cycle(results, self.check_height, self.max_deviance)
