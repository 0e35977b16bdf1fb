from __future__ import annotations

from typing import Iterable, Optional, Protocol

from dispatch_engine.models import ResponderRecord


class ResponderDirectory(Protocol):
    """Read-only view of responder identity, availability and capabilities."""

    def get(self, responder_id: str) -> Optional[ResponderRecord]:
        ...


class InMemoryResponderDirectory:
    def __init__(self, responders: Iterable[ResponderRecord] = ()) -> None:
        self._responders = {r.responder_id: r for r in responders}

    def get(self, responder_id: str) -> Optional[ResponderRecord]:
        return self._responders.get(responder_id)

    def put(self, responder: ResponderRecord) -> None:
        # Maintained by the directory's owner; the engine only reads.
        self._responders[responder.responder_id] = responder

    def __iter__(self):
        return iter(list(self._responders.values()))

    def __len__(self) -> int:
        return len(self._responders)
