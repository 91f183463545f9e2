import logging
from enum import Enum
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, List

log = logging.getLogger(__name__)


class SignalKind(str, Enum):
    """Every signal the supervisor publishes."""
    START = "start"
    STARTED = "started"
    SYNCED = "synced"
    READY = "ready"
    DESYNC = "desync"
    DOWN = "down"
    STOPPED = "stopped"
    INFO = "info"
    ERROR = "error"
    DATA = "data"


@dataclass(frozen=True)
class NodeSignal:
    kind: SignalKind
    payload: Any = None


Listener = Callable[[NodeSignal], None]


class SignalDispatcher:
    """
    Delivers supervisor signals to subscribed listeners.

    Listeners run synchronously on the event loop thread, in subscription
    order. A listener that raises is logged and skipped; the remaining
    listeners still receive the signal.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[SignalKind, List[Listener]] = defaultdict(list)
        self._catch_all: List[Listener] = []

    def subscribe(self, kind: SignalKind, listener: Listener) -> Callable[[], None]:
        """
        Registers a listener for one signal kind.

        :param kind: The signal kind to listen for.
        :param listener: Called with the NodeSignal.
        :return: A callable that removes the subscription.
        """
        kind = SignalKind(kind)
        self._listeners[kind].append(listener)
        return lambda: self._remove(self._listeners[kind], listener)

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        """Registers a listener for every signal kind."""
        self._catch_all.append(listener)
        return lambda: self._remove(self._catch_all, listener)

    @staticmethod
    def _remove(listeners: List[Listener], listener: Listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, kind: SignalKind, payload: Any = None) -> NodeSignal:
        """
        Publishes a signal to its listeners, then to the catch-all listeners.

        :return NodeSignal: The delivered signal.
        """
        signal = NodeSignal(SignalKind(kind), payload)
        for listener in list(self._listeners[signal.kind]) + list(self._catch_all):
            try:
                listener(signal)
            except Exception as e:
                log.error(f"Listener {listener!r} failed on '{signal.kind.value}' signal: {e}", exc_info=True)
        return signal
