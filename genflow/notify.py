"""Topic-based state-change notifications.

Topics published by the engine:

- ``session.event``    every stream event a session processes
- ``session.state``    session state transitions
- ``artifact.updated`` every successful artifact write
- ``approval.changed`` approval state transitions
- ``phase.gate``       a phase's advance gate flipped open or closed

Subscribing to ``*`` receives everything. Callbacks run synchronously on the
publishing coroutine's event loop, in subscription order.
"""

import logging
from collections import defaultdict
from typing import Callable

logger = logging.getLogger("genflow.notify")

WILDCARD = "*"

Callback = Callable[[str, dict], None]


class Notifier:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        """Register ``callback(topic, payload)``. Returns an unsubscribe function."""
        self._subscribers[topic].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers[topic]:
                self._subscribers[topic].remove(callback)

        return _unsubscribe

    def publish(self, topic: str, payload: dict) -> None:
        listeners = list(self._subscribers.get(topic, [])) + list(
            self._subscribers.get(WILDCARD, [])
        )
        for callback in listeners:
            try:
                callback(topic, payload)
            except Exception:
                # A broken subscriber must not take the publishing session down
                logger.exception("Subscriber %r failed on topic '%s'", callback, topic)
