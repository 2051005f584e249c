import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import httpx

from app.gateways import HttpWebhookDispatcher


class TestHttpWebhookDispatcher(unittest.TestCase):
    def _dispatcher(self, handler) -> HttpWebhookDispatcher:
        return HttpWebhookDispatcher(timeout=2.0, client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_success_posts_json(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, str(request.url), request.read()))
            return httpx.Response(204)

        self.assertTrue(self._dispatcher(handler).post("https://hooks.example.com/a", {"flow_id": "f1"}))
        method, url, body = seen[0]
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://hooks.example.com/a")
        self.assertIn(b'"flow_id"', body)

    def test_error_status_is_failure(self) -> None:
        dispatcher = self._dispatcher(lambda request: httpx.Response(502))
        with self.assertLogs("mailflow.gateways", level="WARNING"):
            self.assertFalse(dispatcher.post("https://hooks.example.com/a", {}))

    def test_transport_error_is_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self.assertLogs("mailflow.gateways", level="WARNING"):
            self.assertFalse(self._dispatcher(handler).post("https://hooks.example.com/a", {}))


if __name__ == "__main__":
    unittest.main()
