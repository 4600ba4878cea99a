import json
import unittest

import httpx
from fastapi.testclient import TestClient

from app.core.container import build_container
from app.core.settings import Settings
from main import create_app
from tests.fakes import FakeArtifactStore, FakeClock, sqlite_session_factory

API_URL = "https://provider.test/api/v3/text-to-image"
POLL_URL = "https://provider.test/api/v3/predictions/job-1/result"
OUTPUT_URL = "https://cdn.provider.test/outputs/job-1.png"


def _provider(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if request.method == "POST":
        return httpx.Response(200, json={"data": {"id": "job-1", "urls": {"get": POLL_URL}}})
    if url == POLL_URL:
        return httpx.Response(200, json={"data": {"status": "succeeded", "outputs": [OUTPUT_URL]}})
    if url == OUTPUT_URL:
        return httpx.Response(200, content=b"png", headers={"content-type": "image/png"})
    return httpx.Response(404)


class TestApi(unittest.TestCase):
    def setUp(self):
        cfg = Settings()
        cfg.providers["text_to_image"].api_key = "key"
        cfg.providers["text_to_image"].api_url = API_URL
        cfg.stripe_webhook_secret = None
        cfg.environment = "test"
        cfg.expiration_sweep_enabled = False
        cfg.credit_cost_overrides = {}
        cfg.poll_interval_s = 0.0

        self.artifacts = FakeArtifactStore()
        clock = FakeClock()
        container = build_container(
            cfg,
            session_factory=sqlite_session_factory(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_provider)),
            artifact_store=self.artifacts,
            clock=clock,
            sleep=clock.sleep,
        )
        self.client = TestClient(create_app(container))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)
        self.headers = {"X-User-Id": "u1"}

    def _topup(self, session_id="cs_1", pack_id="small"):
        event = {
            "id": f"evt_{session_id}",
            "type": "checkout.session.completed",
            "data": {"object": {"id": session_id, "metadata": {"user_id": "u1", "purpose": "credit_topup", "pack_id": pack_id}}},
        }
        return self.client.post("/api/webhooks/stripe", content=json.dumps(event))

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "healthy"})

    def test_identity_required(self):
        self.assertEqual(self.client.get("/api/credits").status_code, 401)

    def test_new_user_has_zero_balance(self):
        resp = self.client.get("/api/credits", headers=self.headers)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["balance"], 0)

    def test_cost_table(self):
        costs = {row["type"]: row["credits"] for row in self.client.get("/api/credits/costs").json()}
        self.assertEqual(
            costs,
            {"text_to_image": 30, "image_to_image": 30, "text_to_video": 80, "image_to_video": 80},
        )

    def test_insufficient_credits_is_402(self):
        resp = self.client.post("/api/generations/text_to_image", json={"prompt": "a fox"}, headers=self.headers)
        self.assertEqual(resp.status_code, 402)
        detail = resp.json()["detail"]
        self.assertEqual(detail["details"]["required"], 30)
        self.assertEqual(detail["details"]["shortfall"], 30)
        self.assertIn("You need 30 credits", detail["message"])

    def test_topup_then_generate(self):
        self.assertEqual(self._topup().status_code, 200)
        self.assertTrue(self._topup().json()["duplicate"])
        self.assertEqual(self.client.get("/api/credits", headers=self.headers).json()["balance"], 7000)

        resp = self.client.post("/api/generations/text_to_image", json={"prompt": "a fox"}, headers=self.headers)
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["credits_charged"], 30)
        self.assertEqual(body["balance_after"], 6970)
        generation_id = body["generation"]["id"]

        listed = self.client.get("/api/generations", headers=self.headers).json()
        self.assertEqual([g["id"] for g in listed["items"]], [generation_id])

        first = self.client.get(f"/api/generations/{generation_id}", headers=self.headers).json()
        second = self.client.get(f"/api/generations/{generation_id}", headers=self.headers).json()
        self.assertNotEqual(first["storage_url"], second["storage_url"])

        other = self.client.get(f"/api/generations/{generation_id}", headers={"X-User-Id": "u2"})
        self.assertEqual(other.status_code, 403)

        stats = self.client.get("/api/generations/stats", headers=self.headers).json()
        self.assertEqual(stats["completed"], 1)
        self.assertEqual(stats["total_credits_used"], 30)

        txs = self.client.get("/api/credits/transactions", headers=self.headers).json()["items"]
        self.assertEqual([t["type"] for t in txs], ["spent", "purchased"])

        self.assertEqual(self.client.delete(f"/api/generations/{generation_id}", headers=self.headers).status_code, 204)
        self.assertEqual(len(self.artifacts.deleted), 1)
        self.assertEqual(self.client.get(f"/api/generations/{generation_id}", headers=self.headers).status_code, 404)

    def test_unconfigured_provider_is_503(self):
        self._topup()
        resp = self.client.post("/api/generations/text_to_video", json={"prompt": "a fox"}, headers=self.headers)
        self.assertEqual(resp.status_code, 503)

    def test_prepaid_requires_admin(self):
        resp = self.client.post(
            "/api/generations/text_to_image?prepaid=true", json={"prompt": "a fox"}, headers=self.headers
        )
        self.assertEqual(resp.status_code, 403)

    def test_input_validation(self):
        self.assertEqual(
            self.client.post("/api/generations/image_to_video", json={"prompt": "x"}, headers=self.headers).status_code,
            400,
        )
        self.assertEqual(
            self.client.post("/api/generations/text_to_audio", json={"prompt": "x"}, headers=self.headers).status_code,
            400,
        )

    def test_rate_limiter_stats(self):
        stats = self.client.get("/api/rate-limiter/stats").json()
        self.assertEqual(set(stats), {"image", "video", "poll"})
        self.assertEqual(self.client.get("/api/rate-limiter/stats/video").json()["type"], "video")
        self.assertEqual(self.client.get("/api/rate-limiter/stats/audio").status_code, 404)


if __name__ == "__main__":
    unittest.main()
