"""
State Snapshot Store - the last known value of each hub state document.

None means "not fetched yet", which is different from the hub reporting an
empty list. Once a document is present it never goes back to absent.
"""

import copy
import logging
from typing import Any, Dict, Optional

from .notifier import ChangeNotifier, HubEvent

logger = logging.getLogger(__name__)

DOCUMENTS = (HubEvent.ACTIVITIES, HubEvent.CURRENT_ACTIVITY, HubEvent.DEVICES)


class StateStore:
    """Holds activities, current activity and devices; notifies on change"""

    def __init__(self, notifier: ChangeNotifier):
        self._notifier = notifier
        self._values: Dict[HubEvent, Any] = {}

    def get(self, document: HubEvent) -> Optional[Any]:
        """A private copy of the stored value; changing it never touches the store"""
        return copy.deepcopy(self._values.get(document))

    @property
    def activities(self):
        return self.get(HubEvent.ACTIVITIES)

    @property
    def current_activity(self):
        return self.get(HubEvent.CURRENT_ACTIVITY)

    @property
    def devices(self):
        return self.get(HubEvent.DEVICES)

    def update(self, document: HubEvent, new_value: Any) -> bool:
        """
        Store a new value and notify listeners with the old one if it changed.

        Lists compare element by element in order, so a reordering is a change.

        Returns:
            True if the value changed
        """
        if document not in DOCUMENTS:
            raise ValueError(f"Not a state document: {document}")
        if new_value is None:
            raise ValueError(f"{document.value} cannot go back to absent")

        old_value = self._values.get(document)
        if old_value is not None and old_value == new_value:
            return False

        self._values[document] = copy.deepcopy(new_value)
        logger.debug("%s changed", document.value)
        self._notifier.notify(document, old_value)
        return True
