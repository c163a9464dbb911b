"""Backlog event source and card store boundaries."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Protocol

from agency_supervisor.supervisor.models import CardRef, CardStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CardAdded:
    card: CardRef


@dataclass(frozen=True, slots=True)
class CardModified:
    card: CardRef


@dataclass(frozen=True, slots=True)
class CardRemoved:
    key: str


BacklogEvent = CardAdded | CardModified | CardRemoved
BacklogCallback = Callable[[BacklogEvent], None]


class BacklogEventSource(Protocol):
    """Produces card change events; real sources debounce file-system noise."""

    def subscribe(self, callback: BacklogCallback) -> None:
        """Start delivering events to ``callback``."""

    def unsubscribe(self) -> None:
        """Stop delivering events."""

    def rescan(self) -> None:
        """Emit an event for every known card."""


class CardStore(Protocol):
    """Reads cards and accepts status/flow update requests."""

    def get(self, key: str) -> CardRef | None:
        """Return the card or None."""

    def update(self, key: str, *, status: CardStatus, flow: str | None = None) -> None:
        """Request a status (and optionally flow) change for the card."""


class InMemoryCardStore:
    """Dictionary-backed card store."""

    def __init__(self, cards: list[CardRef] | None = None) -> None:
        self._cards: dict[str, CardRef] = {card.key: card for card in cards or []}
        self._lock = threading.Lock()

    def get(self, key: str) -> CardRef | None:
        with self._lock:
            card = self._cards.get(key)
            return replace(card) if card is not None else None

    def put(self, card: CardRef) -> None:
        with self._lock:
            self._cards[card.key] = replace(card)

    def remove(self, key: str) -> None:
        with self._lock:
            self._cards.pop(key, None)

    def update(self, key: str, *, status: CardStatus, flow: str | None = None) -> None:
        with self._lock:
            card = self._cards.get(key)
            if card is None:
                logger.debug("Status update for unknown card %s ignored", key)
                return
            card.status = status
            if flow is not None:
                card.flow = flow

    def cards(self) -> list[CardRef]:
        with self._lock:
            return [replace(card) for card in self._cards.values()]


class InMemoryBacklogSource:
    """Emits events synchronously for cards held in an ``InMemoryCardStore``."""

    def __init__(self, store: InMemoryCardStore) -> None:
        self.store = store
        self._callback: BacklogCallback | None = None

    def subscribe(self, callback: BacklogCallback) -> None:
        self._callback = callback

    def unsubscribe(self) -> None:
        self._callback = None

    def rescan(self) -> None:
        for card in self.store.cards():
            self._emit(CardModified(card))

    def add(self, card: CardRef) -> None:
        self.store.put(card)
        self._emit(CardAdded(replace(card)))

    def modify(self, card: CardRef) -> None:
        self.store.put(card)
        self._emit(CardModified(replace(card)))

    def remove(self, key: str) -> None:
        self.store.remove(key)
        self._emit(CardRemoved(key))

    def _emit(self, event: BacklogEvent) -> None:
        callback = self._callback
        if callback is not None:
            callback(event)
