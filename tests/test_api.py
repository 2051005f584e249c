import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

os.environ["USE_DB"] = "0"

from fastapi.testclient import TestClient

from app import main
from app.config import EngineSettings
from app.engine import build_engine
from outbox import Outbox


class TestApi(unittest.TestCase):
    def setUp(self) -> None:
        self.outbox = Outbox()
        main.engine = build_engine(EngineSettings(), self.outbox)
        self.client = TestClient(main.app)
        self.client.post("/subscribers", json={"id": "s1", "email": "ada@example.com", "attributes": {"country": "US"}})
        self.client.post("/templates", json={"id": "welcome", "name": "Welcome"})

    def _create(self, **overrides) -> dict:
        body = {
            "id": "a1",
            "name": "Welcome series",
            "trigger_type": "subscriber.created",
            "steps": [{"action_type": "send_email", "payload": {"template_id": "welcome"}, "delay_minutes": 5}],
        }
        body.update(overrides)
        res = self.client.post("/automations", json=body)
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()["automation"]

    def test_create_and_get_automation(self) -> None:
        created = self._create()
        self.assertEqual(created["status"], "draft")
        res = self.client.get("/automations/a1")
        self.assertTrue(res.json()["ok"])
        self.assertEqual(res.json()["automation"]["steps"][0]["action_type"], "send_email")
        listed = self.client.get("/automations", params={"status": "draft"}).json()["automations"]
        self.assertEqual([a["id"] for a in listed], ["a1"])

    def test_invalid_automation_returns_error_envelope(self) -> None:
        res = self.client.post(
            "/automations",
            json={"trigger_type": "x", "steps": [{"action_type": "send_email", "payload": {}}]},
        )
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["errors"][0]["code"], "STEP_PAYLOAD_INVALID")
        self.assertEqual(body["errors"][0]["path"], "steps[0].payload.template_id")

    def test_unknown_automation_is_404(self) -> None:
        self.assertEqual(self.client.get("/automations/nope").status_code, 404)
        self.assertEqual(self.client.post("/automations/nope/activate").status_code, 404)
        self.assertEqual(self.client.get("/automations/nope/analytics").status_code, 404)

    def test_event_starts_flow_once_active(self) -> None:
        self._create()
        res = self.client.post("/events", json={"event": "subscriber.created", "subscriber_id": "s1"})
        self.assertEqual(res.json()["flows"], [])

        self.assertEqual(self.client.post("/automations/a1/activate").json()["automation"]["status"], "active")
        res = self.client.post(
            "/events", json={"event": "subscriber.created", "email": "ADA@example.com", "payload": {"source": "web"}}
        )
        flows = res.json()["flows"]
        self.assertEqual(len(flows), 1)
        self.assertEqual(flows[0]["context"]["source"], "web")

        listed = self.client.get("/automations/a1/flows", params={"status": "active"}).json()["flows"]
        self.assertEqual(len(listed), 1)
        self.assertEqual(self.client.get("/automations/a1/flows", params={"status": "bogus"}).status_code, 400)

    def test_behavior_event(self) -> None:
        self._create(id="b1", trigger_type="behavioral:viewed_product", status="active")
        res = self.client.post("/behavior", json={"event": "viewed_product", "subscriber_id": "s1", "data": {"sku": "x"}})
        self.assertEqual(len(res.json()["flows"]), 1)

    def test_event_requires_known_subscriber(self) -> None:
        res = self.client.post("/events", json={"event": "subscriber.created", "subscriber_id": "ghost"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "SUBSCRIBER_NOT_FOUND")
        res = self.client.post("/events", json={"event": "subscriber.created"})
        self.assertEqual(res.json()["errors"][0]["code"], "SUBSCRIBER_REQUIRED")

    def test_stop_and_analytics(self) -> None:
        self._create(status="active")
        self.client.post("/events", json={"event": "subscriber.created", "subscriber_id": "s1"})
        res = self.client.post("/automations/a1/subscribers/s1/stop", json={"reason": "unsubscribed"})
        self.assertTrue(res.json()["stopped"])
        self.assertEqual(res.json()["flow"]["stop_reason"], "unsubscribed")
        again = self.client.post("/automations/a1/subscribers/s1/stop")
        self.assertFalse(again.json()["stopped"])

        stats = self.client.get("/automations/a1/analytics").json()["analytics"]
        self.assertEqual(stats["total_flows"], 1)
        self.assertEqual(stats["stopped_flows"], 1)
        self.assertEqual(stats["emails_sent"], 0)
        self.assertEqual(stats["step_performance"][0]["action_type"], "send_email")

    def test_deactivate(self) -> None:
        self._create(status="active")
        res = self.client.post("/automations/a1/deactivate")
        self.assertEqual(res.json()["automation"]["status"], "inactive")


if __name__ == "__main__":
    unittest.main()
