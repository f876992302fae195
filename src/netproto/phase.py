"""Execution phases a layer can participate in."""

from __future__ import annotations

from enum import Enum

from .errors import UnknownKindError


class Phase(str, Enum):
    """Training, testing, running (inference), any of them, or none."""

    NONE = "NONE"
    TRAIN = "TRAIN"
    TEST = "TEST"
    RUN = "RUN"
    ALL = "ALL"

    def expand(self) -> set[Phase]:
        """Concrete phases named by this value; ``ALL`` covers RUN, TEST and TRAIN."""
        if self is Phase.ALL:
            return {Phase.RUN, Phase.TEST, Phase.TRAIN}
        if self is Phase.NONE:
            return set()
        return {self}


def parse_phase(text: str) -> Phase:
    try:
        return Phase(text.strip().upper())
    except ValueError as exc:
        raise UnknownKindError("phase", text) from exc
