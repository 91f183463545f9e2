import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional


class LifecycleState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WAITING_FOR_SYNC_CONFIRMATION = "waiting_for_sync_confirmation"
    SYNCED = "synced"
    MONITORING = "monitoring"
    DESYNCED = "desynced"


# Health cycles only run while the daemon is in one of these states.
MONITORED_STATES = frozenset({LifecycleState.SYNCED, LifecycleState.MONITORING, LifecycleState.DESYNCED})


@dataclass
class LivenessState:
    consecutive_failures: int = 0
    has_seen_first_success: bool = False
    pending_down_timer: Optional[asyncio.TimerHandle] = None
    down_declared: bool = False


@dataclass
class SupervisorState:
    """All mutable bookkeeping of one NodeSupervisor, mutated only on the event loop."""
    lifecycle: LifecycleState = LifecycleState.STOPPED
    liveness: LivenessState = field(default_factory=LivenessState)
    probe_echo: asyncio.Event = field(default_factory=asyncio.Event)
    stopping: bool = False
    retry_start_handle: Optional[asyncio.TimerHandle] = None
    sync_check_task: Optional[asyncio.Task] = None
    sync_retry_handle: Optional[asyncio.TimerHandle] = None
