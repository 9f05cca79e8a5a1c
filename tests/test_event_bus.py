import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from event_bus import EventBus, EventValidationError, make_event
from outbox import Outbox


class TestEventBus(unittest.TestCase):
    def test_publish_enqueues_to_outbox(self) -> None:
        outbox = Outbox()
        bus = EventBus(outbox=outbox)
        bus.publish(make_event("query.created", {"query_id": "q1"}, app_id="app_dev_1"))
        pending = outbox.pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["meta"]["app_id"], "app_dev_1")

    def test_handlers_called_in_order(self) -> None:
        bus = EventBus()
        calls = []
        bus.subscribe("query.created", lambda evt: calls.append("h1"))
        bus.subscribe("query.created", lambda evt: calls.append("h2"))
        bus.publish(make_event("query.created", {"query_id": "q1"}))
        self.assertEqual(calls, ["h1", "h2"])

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        calls = []

        def h1(evt: dict) -> None:
            calls.append("h1")

        bus.subscribe("query.deleted", h1)
        self.assertTrue(bus.unsubscribe("query.deleted", h1))
        self.assertFalse(bus.unsubscribe("query.deleted", h1))
        bus.publish(make_event("query.deleted", {"query_id": "q1"}))
        self.assertEqual(calls, [])

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        calls = []

        def broken(evt: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe("serve.served_app", broken)
        bus.subscribe("serve.served_app", lambda evt: calls.append(evt["name"]))
        with self.assertLogs("quarry.events", level="WARNING"):
            bus.publish(make_event("serve.served_app", {"app_id": "app_1"}))
        self.assertEqual(calls, ["serve.served_app"])

    def test_invalid_envelope_missing_name(self) -> None:
        bus = EventBus()
        event = make_event("query.created", {"query_id": "q1"})
        event.pop("name")
        with self.assertRaises(EventValidationError):
            bus.publish(event)

    def test_name_needs_entity_and_action(self) -> None:
        with self.assertRaises(EventValidationError):
            make_event("created", {})

    def test_invalid_occurred_at(self) -> None:
        bus = EventBus()
        event = make_event("query.created", {"query_id": "q1"})
        event["meta"]["occurred_at"] = "2026-01-29T01:23:45"
        with self.assertRaises(EventValidationError):
            bus.publish(event)

    def test_payload_rejects_nan(self) -> None:
        bus = EventBus()
        event = make_event("query.previewed", {"value": 1.0})
        event["payload"]["value"] = float("nan")
        with self.assertRaises(EventValidationError):
            bus.publish(event)


if __name__ == "__main__":
    unittest.main()
