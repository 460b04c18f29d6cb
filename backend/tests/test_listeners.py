import unittest
from unittest.mock import MagicMock

from backend.listeners import ListenerRegistry
from backend.snapshot_store import SnapshotStore, SyncState
from shared.records import CoupleStats


class ListenerRegistryTests(unittest.TestCase):
    def test_start_is_idempotent_per_key(self):
        registry = ListenerRegistry()
        factory = MagicMock(side_effect=lambda: MagicMock())
        self.assertTrue(registry.start(("C1", "entries"), factory))
        self.assertFalse(registry.start(("C1", "entries"), factory))
        self.assertEqual(factory.call_count, 1)
        self.assertEqual(len(registry), 1)

    def test_stop_cancels_subscription(self):
        registry = ListenerRegistry()
        subscription = MagicMock()
        registry.start(("comments", "e1"), lambda: subscription)
        self.assertTrue(registry.stop(("comments", "e1")))
        subscription.cancel.assert_called_once()
        self.assertFalse(registry.stop(("comments", "e1")))
        self.assertFalse(registry.is_active(("comments", "e1")))

    def test_stop_where(self):
        registry = ListenerRegistry()
        subs = {key: MagicMock() for key in [("C1", "stats"), ("C1", "entries"), ("comments", "e1")]}
        for key, sub in subs.items():
            registry.start(key, lambda sub=sub: sub)
        stopped = registry.stop_where(lambda key: key[0] == "C1")
        self.assertEqual(stopped, 2)
        self.assertEqual(registry.keys(), [("comments", "e1")])
        self.assertEqual(registry.stop_all(), 1)


class SnapshotStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = SnapshotStore(SyncState(couple_id="C1", user_id="u1"))

    def test_update_publishes_changed_fields(self):
        seen = []
        self.store.subscribe(lambda name, state: seen.append((name, state.is_uploading_photo)))
        self.store.update(is_uploading_photo=True)
        self.assertEqual(seen, [("is_uploading_photo", True)])

    def test_states_are_replaced_not_mutated(self):
        before = self.store.state
        self.store.update(stats=CoupleStats(photo_url="u"))
        self.assertIsNone(before.stats.photo_url)
        self.assertEqual(self.store.state.stats.photo_url, "u")

    def test_unsubscribe(self):
        seen = []
        unsubscribe = self.store.subscribe(lambda name, state: seen.append(name))
        unsubscribe()
        self.store.update(entries=[])
        self.assertEqual(seen, [])

    def test_failing_observer_does_not_block_others(self):
        seen = []

        def broken(name, state):
            raise RuntimeError("boom")

        self.store.subscribe(broken)
        self.store.subscribe(lambda name, state: seen.append(name))
        self.store.update(profiles={})
        self.assertEqual(seen, ["profiles"])

    def test_unknown_field_is_rejected(self):
        with self.assertRaises(ValueError):
            self.store.update(nope=1)


if __name__ == "__main__":
    unittest.main()
