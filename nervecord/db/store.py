"""
In-memory record stores and the broker state that owns them.

All access happens from the single asyncio event loop, and every mutation is a
plain synchronous call, so no locking is done here. If handlers ever run on
several threads, this module is the one place that needs a lock.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Iterator, Optional, TypeVar

from nervecord.db.models import Message, Bot, Heartbeat, Larva, Priority, Project, Suggestion

T = TypeVar("T")


class KeyedStore(Generic[T]):
    """Records addressed by a key; iteration follows insertion order."""

    def __init__(self, key: Callable[[T], str]) -> None:
        self._key = key
        self._items: dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def put(self, item: T) -> T:
        """Insert or replace the record under its key."""
        self._items[self._key(item)] = item
        return item

    def delete(self, key: str) -> Optional[T]:
        return self._items.pop(key, None)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        if predicate is None:
            return list(self._items.values())
        return [item for item in self._items.values() if predicate(item)]

    def replace_all(self, items: Iterable[T]) -> None:
        self._items = {self._key(item): item for item in items}

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items.values()))


class OrderedStore(Generic[T]):
    """Records kept in an explicit, caller-controlled order."""

    def __init__(self, key: Callable[[T], str]) -> None:
        self._key = key
        self._items: list[T] = []

    def index(self, key: str) -> int:
        for i, item in enumerate(self._items):
            if self._key(item) == key:
                return i
        return -1

    def get(self, key: str) -> Optional[T]:
        i = self.index(key)
        return self._items[i] if i != -1 else None

    def put(self, item: T, position: Optional[int] = None) -> T:
        """Append, or insert at `position` (clamped to the list bounds)."""
        if position is None:
            self._items.append(item)
        else:
            self._items.insert(max(0, min(position, len(self._items))), item)
        return item

    def delete(self, key: str) -> Optional[T]:
        i = self.index(key)
        if i == -1:
            return None
        return self._items.pop(i)

    def pop_at(self, position: int) -> T:
        return self._items.pop(position)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        if predicate is None:
            return list(self._items)
        return [item for item in self._items if predicate(item)]

    def replace_all(self, items: Iterable[T]) -> None:
        self._items = list(items)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.index(key) != -1

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))


@dataclass
class BrokerState:
    """Everything the broker holds in memory. Injected into handlers via app.state."""

    messages: KeyedStore[Message] = field(default_factory=lambda: KeyedStore(lambda m: m.id))
    bots: KeyedStore[Bot] = field(default_factory=lambda: KeyedStore(lambda b: b.name))
    heartbeats: KeyedStore[Heartbeat] = field(default_factory=lambda: KeyedStore(lambda h: h.name))
    larvae: KeyedStore[Larva] = field(default_factory=lambda: KeyedStore(lambda l: l.name))
    priorities: OrderedStore[Priority] = field(default_factory=lambda: OrderedStore(lambda p: p.id))
    projects: OrderedStore[Project] = field(default_factory=lambda: OrderedStore(lambda p: p.id))
    suggestions: OrderedStore[Suggestion] = field(default_factory=lambda: OrderedStore(lambda s: s.id))
    started_at: float = field(default_factory=time.monotonic)
    # collection name -> "loaded" | "missing" | "reset: <reason>"
    load_report: dict[str, str] = field(default_factory=dict)

    def uptime(self) -> float:
        return time.monotonic() - self.started_at
