"""
Change Notifier - fans hub state changes out to registered listeners.

Observers are duck-typed: any of the optional methods below that an observer
implements gets subscribed, the rest are simply never called.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class HubEvent(Enum):
    ACTIVITIES = "activities"
    CURRENT_ACTIVITY = "current_activity"
    DEVICES = "devices"
    CONNECTION_LOST = "connection_lost"


OBSERVER_METHODS = {
    HubEvent.ACTIVITIES: "on_activities_changed",
    HubEvent.CURRENT_ACTIVITY: "on_current_activity_changed",
    HubEvent.DEVICES: "on_devices_changed",
    HubEvent.CONNECTION_LOST: "on_connection_lost",
}

Listener = Callable[[Any, Any], None]


class ChangeNotifier:
    """
    Event kind -> listeners mapping.

    Listeners are called synchronously, in subscription order, as
    ``listener(source, value)`` where value is the previous state document
    (or the error, for CONNECTION_LOST).
    """

    def __init__(self, source: Any = None):
        self.source = source
        self._listeners: Dict[HubEvent, List[Listener]] = defaultdict(list)

    def subscribe(self, event: HubEvent, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it"""
        event = HubEvent(event)
        self._listeners[event].append(listener)

        def unsubscribe():
            try:
                self._listeners[event].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def attach_observer(self, observer: Any) -> int:
        """Subscribe whichever observer callbacks exist; returns how many were found"""
        if observer is None:
            return 0
        attached = 0
        for event, method_name in OBSERVER_METHODS.items():
            callback = getattr(observer, method_name, None)
            if callable(callback):
                self.subscribe(event, callback)
                attached += 1
        return attached

    def listener_count(self, event: HubEvent) -> int:
        return len(self._listeners.get(HubEvent(event), ()))

    def notify(self, event: HubEvent, value: Any) -> None:
        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            return
        logger.debug("Notifying %d listeners of %s", len(listeners), event.value)
        for listener in listeners:
            try:
                listener(self.source, value)
            except Exception:
                logger.exception("Listener for %s raised", event.value)
