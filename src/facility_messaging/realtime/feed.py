"""In-process change-notification channel.

Writers publish a :class:`ChangeEvent` after each committed change; subscribers
register a listener scoped by event kind and an optional predicate.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from facility_messaging.realtime.events import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], Awaitable[None] | None]
Predicate = Callable[[ChangeEvent], bool]


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    feed: ChangeFeed
    listener: Listener
    kinds: frozenset[ChangeKind]
    predicate: Predicate | None = None
    active: bool = field(default=True, init=False)

    def matches(self, event: ChangeEvent) -> bool:
        """Return True if this subscription wants the event."""
        if not self.active or event.kind not in self.kinds:
            return False
        return self.predicate is None or self.predicate(event)

    def unsubscribe(self) -> None:
        """Stop receiving events."""
        self.feed.unsubscribe(self)


class ChangeFeed:
    """Fan-out of change events to subscribed listeners."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        listener: Listener,
        *,
        kinds: Iterable[ChangeKind] | None = None,
        predicate: Predicate | None = None,
    ) -> Subscription:
        """Register ``listener`` for events of ``kinds`` accepted by ``predicate``."""
        subscription = Subscription(
            feed=self,
            listener=listener,
            kinds=frozenset(kinds) if kinds is not None else frozenset(ChangeKind),
            predicate=predicate,
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription; unknown subscriptions are ignored."""
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        """Return the number of active subscriptions."""
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every matching listener.

        A failing listener is logged and does not affect the writer or the
        other listeners.
        """
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "Change listener failed for %s: %s", event.kind.value, exc, exc_info=True
                )
