from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EntityUpdate:
    entity_id: str
    reason: str
    snapshot: Any


UpdateHandler = Callable[[EntityUpdate], None]


class EntityChannel:
    """Publish/subscribe channel owned by one engine, keyed by entity id."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[UpdateHandler]] = defaultdict(list)

    def subscribe(self, entity_id: str, handler: UpdateHandler) -> Callable[[], None]:
        self._subscribers[entity_id].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(entity_id)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, entity_id: str, reason: str, snapshot: Any) -> None:
        update = EntityUpdate(entity_id=entity_id, reason=reason, snapshot=snapshot)
        for handler in list(self._subscribers.get(entity_id, [])):
            handler(update)

    def subscriber_count(self, entity_id: str) -> int:
        return len(self._subscribers.get(entity_id, []))

    def clear(self) -> None:
        self._subscribers.clear()
