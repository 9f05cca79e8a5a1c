import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import make_event
from outbox import Outbox


class TestOutbox(unittest.TestCase):
    def test_enqueue_pending_order(self) -> None:
        outbox = Outbox()
        outbox.enqueue(make_event("query.created", {"x": 1}))
        outbox.enqueue(make_event("query.deleted", {"x": 2}))
        self.assertEqual([p["name"] for p in outbox.pending()], ["query.created", "query.deleted"])
        self.assertEqual([p["name"] for p in outbox.pending("query.deleted")], ["query.deleted"])

    def test_ack(self) -> None:
        outbox = Outbox()
        event = make_event("query.created", {"x": 1})
        outbox.enqueue(event)
        event_id = event["meta"]["event_id"]
        self.assertTrue(outbox.ack(event_id))
        self.assertEqual(outbox.pending(), [])
        self.assertFalse(outbox.ack(event_id))

    def test_max_events_drops_oldest(self) -> None:
        outbox = Outbox(max_events=2)
        for idx in range(3):
            outbox.enqueue(make_event("query.created", {"idx": idx}))
        self.assertEqual([p["payload"]["idx"] for p in outbox.pending()], [1, 2])
        outbox.clear()
        self.assertEqual(outbox.pending(), [])


if __name__ == "__main__":
    unittest.main()
