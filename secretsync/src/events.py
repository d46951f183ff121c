from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class Known:
    """A delete whose final observed object is available."""

    obj: Any


@dataclass(frozen=True)
class UnknownFinalState:
    """A delete observed only as a missing key after a re-list (tombstone).

    ``last_known`` is the object the cache held before the watch lost track of
    it.  It may be stale and is never authoritative.
    """

    key: str
    last_known: Any = None


DeleteState = Known | UnknownFinalState


class EventHandler(Protocol):
    """Receiver of cache notifications, independent of the watch transport."""

    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, state: DeleteState) -> None: ...
