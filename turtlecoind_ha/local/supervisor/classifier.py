"""
Console output classification.

The daemon announces its lifecycle only through human-readable console text,
and the wording changes between daemon releases. The exact marker strings are
therefore kept in versioned `MarkerSet`s so a new release only needs a new set.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple


class OutputMarker(Enum):
    STARTED = "started"
    SYNCED = "synced"
    HELP = "help"


@dataclass(frozen=True)
class MarkerSet:
    """The console phrases one family of daemon releases prints."""
    version: str
    synced: Tuple[str, ...]
    started: Tuple[str, ...]
    help: Tuple[str, ...]


TURTLECOIND_MARKERS = MarkerSet(
    version="turtlecoind",
    synced=(
        "SUCCESSFULLY SYNCHRONIZED WITH THE TURTLECOIN NETWORK",
        "SYNCHRONIZED OK",
        "Successfully synchronized with network",
        "synchronized with network",
    ),
    started=(
        "Always exit TurtleCoind and Simplewallet with",
        "P2p server initialized OK",
        "p2p initialized",
    ),
    help=(
        "Show this help",
    ),
)


def _lowered(phrases: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(phrase.lower() for phrase in phrases)


class OutputClassifier:
    """
    Turns single console lines into lifecycle markers. Matching ignores case.
    Holds no state between lines.
    """

    def __init__(self, markers: MarkerSet = TURTLECOIND_MARKERS) -> None:
        self.markers = markers
        # Sync claims win over the start banner when one line carries both.
        self._ordered = (
            (OutputMarker.SYNCED, _lowered(markers.synced)),
            (OutputMarker.STARTED, _lowered(markers.started)),
            (OutputMarker.HELP, _lowered(markers.help)),
        )

    def classify(self, line: str) -> Optional[OutputMarker]:
        """
        :param line: One line of daemon output.
        :return: The recognised marker, or None for ordinary output.
        """
        line = line.strip().lower()
        if not line:
            return None
        for marker, phrases in self._ordered:
            if any(phrase in line for phrase in phrases):
                return marker
        return None
