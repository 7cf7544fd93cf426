#!/usr/bin/env python3
"""
Tests for the State Snapshot Store and Change Notifier
"""

import pytest
from hypothesis import given, settings, strategies as st

from harmony_hub.notifier import ChangeNotifier, HubEvent
from harmony_hub.state_store import StateStore

TV = {"id": "1", "label": "Watch TV"}
MUSIC = {"id": "2", "label": "Listen to Music"}


class Recorder:
    """Observer implementing every callback"""

    def __init__(self):
        self.calls = []

    def on_activities_changed(self, hub, old):
        self.calls.append(("activities", old))

    def on_current_activity_changed(self, hub, old):
        self.calls.append(("current_activity", old))

    def on_devices_changed(self, hub, old):
        self.calls.append(("devices", old))


class CurrentOnly:
    """Observer that only cares about the current activity"""

    def __init__(self):
        self.olds = []

    def on_current_activity_changed(self, hub, old):
        self.olds.append(old)


class TestStateStore:

    def setup_method(self):
        self.notifier = ChangeNotifier(source="hub")
        self.observer = Recorder()
        self.notifier.attach_observer(self.observer)
        self.store = StateStore(self.notifier)

    def test_documents_start_absent(self):
        assert self.store.activities is None
        assert self.store.current_activity is None
        assert self.store.devices is None
        assert self.observer.calls == []

    def test_first_population_is_a_change_even_when_empty(self):
        assert self.store.update(HubEvent.DEVICES, [])
        assert self.store.devices == []
        assert self.observer.calls == [("devices", None)]

    def test_same_value_twice_notifies_once(self):
        self.store.update(HubEvent.CURRENT_ACTIVITY, TV)
        changed = self.store.update(HubEvent.CURRENT_ACTIVITY, dict(TV))
        assert changed is False
        assert self.observer.calls == [("current_activity", None)]

    def test_change_passes_old_value_and_accessor_has_new(self):
        self.store.update(HubEvent.CURRENT_ACTIVITY, TV)
        self.store.update(HubEvent.CURRENT_ACTIVITY, MUSIC)
        assert self.observer.calls[-1] == ("current_activity", TV)
        assert self.store.current_activity == MUSIC

    def test_reordering_a_list_is_a_change(self):
        self.store.update(HubEvent.ACTIVITIES, [TV, MUSIC])
        assert self.store.update(HubEvent.ACTIVITIES, [MUSIC, TV])
        assert self.observer.calls == [("activities", None), ("activities", [TV, MUSIC])]

    def test_record_key_order_is_not_a_change(self):
        self.store.update(HubEvent.CURRENT_ACTIVITY, {"id": "1", "label": "Watch TV"})
        assert not self.store.update(HubEvent.CURRENT_ACTIVITY, {"label": "Watch TV", "id": "1"})

    def test_cannot_revert_to_absent(self):
        self.store.update(HubEvent.ACTIVITIES, [TV])
        with pytest.raises(ValueError):
            self.store.update(HubEvent.ACTIVITIES, None)
        assert self.store.activities == [TV]

    def test_connection_lost_is_not_a_document(self):
        with pytest.raises(ValueError):
            self.store.update(HubEvent.CONNECTION_LOST, "boom")

    def test_stored_value_is_a_copy(self):
        activities = [dict(TV)]
        self.store.update(HubEvent.ACTIVITIES, activities)
        activities[0]["label"] = "Changed behind our back"
        assert self.store.activities == [TV]

    def test_read_value_is_a_copy(self):
        self.store.update(HubEvent.ACTIVITIES, [dict(TV)])
        self.store.update(HubEvent.CURRENT_ACTIVITY, dict(TV))
        self.store.activities[0]["label"] = "Changed"
        self.store.activities.append(MUSIC)
        self.store.current_activity["id"] = "2"
        assert self.store.activities == [TV]
        assert self.store.get(HubEvent.CURRENT_ACTIVITY) == TV
        assert not self.store.update(HubEvent.CURRENT_ACTIVITY, dict(TV))

    @given(values=st.lists(st.sampled_from(["-1", "1", "2", "3"]), min_size=1, max_size=20))
    @settings(max_examples=100)
    def test_notifies_iff_value_changes(self, values):
        notifier = ChangeNotifier()
        observer = CurrentOnly()
        notifier.attach_observer(observer)
        store = StateStore(notifier)

        expected_olds = []
        previous = None
        for value in values:
            record = {"id": value}
            if record != previous:
                expected_olds.append(previous)
            store.update(HubEvent.CURRENT_ACTIVITY, record)
            previous = record
            # last write wins
            assert store.current_activity == record

        assert observer.olds == expected_olds


class TestChangeNotifier:

    def test_partial_observer_is_fine(self):
        notifier = ChangeNotifier(source="hub")
        observer = CurrentOnly()
        assert notifier.attach_observer(observer) == 1

        notifier.notify(HubEvent.ACTIVITIES, None)
        notifier.notify(HubEvent.DEVICES, None)
        notifier.notify(HubEvent.CURRENT_ACTIVITY, TV)
        assert observer.olds == [TV]

    def test_no_observer(self):
        notifier = ChangeNotifier()
        assert notifier.attach_observer(None) == 0
        notifier.notify(HubEvent.CURRENT_ACTIVITY, None)

    def test_listener_receives_source(self):
        notifier = ChangeNotifier(source="the-hub")
        seen = []
        notifier.subscribe(HubEvent.DEVICES, lambda hub, old: seen.append((hub, old)))
        notifier.notify(HubEvent.DEVICES, [])
        assert seen == [("the-hub", [])]

    def test_unsubscribe(self):
        notifier = ChangeNotifier()
        seen = []
        unsubscribe = notifier.subscribe(HubEvent.DEVICES, lambda hub, old: seen.append(old))
        unsubscribe()
        unsubscribe()
        notifier.notify(HubEvent.DEVICES, [])
        assert seen == []
        assert notifier.listener_count(HubEvent.DEVICES) == 0

    def test_raising_listener_does_not_stop_the_others(self):
        notifier = ChangeNotifier()
        seen = []

        def broken(hub, old):
            raise RuntimeError("listener bug")

        notifier.subscribe(HubEvent.ACTIVITIES, broken)
        notifier.subscribe(HubEvent.ACTIVITIES, lambda hub, old: seen.append(old))
        notifier.notify(HubEvent.ACTIVITIES, [TV])
        assert seen == [[TV]]

    def test_listeners_called_in_subscription_order(self):
        notifier = ChangeNotifier()
        order = []
        for name in ("first", "second", "third"):
            notifier.subscribe(HubEvent.CURRENT_ACTIVITY, lambda hub, old, name=name: order.append(name))
        notifier.notify(HubEvent.CURRENT_ACTIVITY, None)
        assert order == ["first", "second", "third"]
