import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# No collector and no real tokens during tests
os.environ["OTEL_ENABLED"] = "false"
os.environ["ENV"] = "test"

from fastapi.testclient import TestClient

from app.app import app, get_orchestrator, get_store
from inference.config import PipelineConfig
from inference.errors import BackendError, BackendTimeout, BackendUnavailable
from inference.orchestrator import PredictionOrchestrator

from fakes import FakeStore, ml_service_variant

TOKENS = {
    "alice-token": {"token": "alice-token", "owner": "alice", "role": "user", "active": True,
                    "expires_at": datetime.now(timezone.utc) + timedelta(days=30)},
    "bob-token": {"token": "bob-token", "owner": "bob", "role": "user", "active": True,
                  "expires_at": datetime.now(timezone.utc) + timedelta(days=30)},
    "admin-token": {"token": "admin-token", "owner": "ops", "role": "admin", "active": True,
                    "expires_at": datetime.now(timezone.utc) + timedelta(days=30)},
    "old-token": {"token": "old-token", "owner": "carol", "role": "user", "active": True,
                  "expires_at": datetime.now(timezone.utc) - timedelta(days=1)},
}

ALICE = {"Authorization": "Bearer alice-token"}
BOB = {"Authorization": "Bearer bob-token"}
ADMIN = {"Authorization": "Bearer admin-token"}


def tokens_collection():
    collection = MagicMock()
    collection.find_one.side_effect = lambda query: TOKENS.get(query["token"])
    return collection


class PredictionApiTest(unittest.TestCase):

    def setUp(self):
        print(f"\n🧪 Running {self._testMethodName}...")
        self.store = FakeStore()
        self.use_backend(ml_service_variant())
        auth_patch = patch("app.utils.get_mongo_collection", side_effect=lambda name: tokens_collection())
        auth_patch.start()
        self.addCleanup(auth_patch.stop)
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def use_backend(self, backend):
        self.backend = backend
        orchestrator = PredictionOrchestrator(PipelineConfig(), self.store, backend=backend)
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    def predict(self, text="Wannan labari ne", language="ha", headers=None):
        return self.client.post("/predictions/predict", json={"text": text, "language": language},
                                headers=headers or {})

    # -------------------------------------------------------
    # POST /predictions/predict
    # -------------------------------------------------------
    def test_predict(self):
        res = self.predict(headers={"User-Agent": "pytest-agent"})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertTrue(body["success"])
        data = body["data"]
        self.assertIn(data["predictionId"], self.store.predictions)
        self.assertEqual(data["prediction"]["label"], 1)
        self.assertEqual(data["prediction"]["label_text"], "AI-generated")
        self.assertAlmostEqual(data["prediction"]["probabilities"][1], data["prediction"]["confidence"])
        self.assertEqual(data["explanation"]["status"], "genuine")
        self.assertEqual(data["biasScore"]["overall"], 0.4)
        self.assertEqual(data["language"], "ha")
        self.assertEqual(data["language_name"], "Hausa")
        self.assertIn("processing_time", data)

        stored = self.store.predictions[data["predictionId"]]
        self.assertIsNone(stored.requester_id)
        self.assertEqual(stored.metadata.caller_agent, "pytest-agent")
        self.assertEqual(stored.metadata.caller_address, "testclient")

    def test_predict_with_token_sets_owner(self):
        res = self.predict(headers=ALICE)
        self.assertEqual(self.store.predictions[res.json()["data"]["predictionId"]].requester_id, "alice")

    def test_predict_with_expired_token_is_anonymous(self):
        res = self.predict(headers={"Authorization": "Bearer old-token"})
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(self.store.predictions[res.json()["data"]["predictionId"]].requester_id)

    def test_predict_validation(self):
        for payload in ({"text": "", "language": "ha"},
                        {"text": "Hello", "language": "en"},
                        {"text": "x" * 50001, "language": "yo"},
                        {"language": "ha"}):
            res = self.client.post("/predictions/predict", json=payload)
            self.assertEqual(res.status_code, 400, payload)
            self.assertFalse(res.json()["success"])
            self.assertTrue(res.json()["errors"])
        self.assertEqual(self.backend.client.calls, [])
        self.assertEqual(self.store.create_calls, 0)

    def test_backend_errors_map_to_status_codes(self):
        for error, status in ((BackendUnavailable(), 503), (BackendTimeout(), 504),
                              (BackendError(500, "Traceback: secret internals"), 500)):
            self.use_backend(ml_service_variant(error=error))
            res = self.predict()
            self.assertEqual(res.status_code, status)
            self.assertFalse(res.json()["success"])
            self.assertNotIn("secret internals", res.text)
        self.assertEqual(self.store.predictions, {})

    def test_persistence_failure(self):
        self.store.fail_create = True
        res = self.predict()
        self.assertEqual(res.status_code, 500)
        self.assertNotIn("predictionId", res.text)

    # -------------------------------------------------------
    # GET /predictions/history and /predictions/{id}
    # -------------------------------------------------------
    def test_history_requires_token(self):
        self.assertEqual(self.client.get("/predictions/history").status_code, 401)
        res = self.client.get("/predictions/history", headers={"Authorization": "Bearer nope"})
        self.assertEqual(res.status_code, 401)

    def test_dev_environment_still_requires_token(self):
        with patch.dict(os.environ, {"ENV": "dev"}):
            self.assertEqual(self.client.get("/predictions/history").status_code, 401)
            self.assertEqual(self.client.get("/feedback").status_code, 401)
            self.assertEqual(self.client.get("/admin/dashboard").status_code, 401)
        self.assertEqual(self.store.create_calls, 0)

    def test_history(self):
        for _ in range(3):
            self.predict(headers=ALICE)
        self.predict(headers=BOB)

        res = self.client.get("/predictions/history?page=1&limit=2", headers=ALICE)

        self.assertEqual(res.status_code, 200)
        data = res.json()["data"]
        self.assertEqual(len(data["predictions"]), 2)
        self.assertEqual(data["pagination"], {"page": 1, "limit": 2, "total": 3, "pages": 2})
        self.assertTrue(all(p["requester_id"] == "alice" for p in data["predictions"]))

    def test_get_prediction_access(self):
        anonymous_id = self.predict().json()["data"]["predictionId"]
        alice_id = self.predict(headers=ALICE).json()["data"]["predictionId"]

        self.assertEqual(self.client.get(f"/predictions/{anonymous_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/predictions/{anonymous_id}", headers=BOB).status_code, 200)
        self.assertEqual(self.client.get(f"/predictions/{alice_id}", headers=ALICE).status_code, 200)
        self.assertEqual(self.client.get(f"/predictions/{alice_id}", headers=BOB).status_code, 403)
        self.assertEqual(self.client.get(f"/predictions/{alice_id}").status_code, 403)

        res = self.client.get(f"/predictions/{alice_id}", headers=ALICE)
        self.assertEqual(res.json()["data"]["outcome"]["explanation"]["status"], "genuine")

    def test_get_unknown_prediction(self):
        self.assertEqual(self.client.get("/predictions/64b7f0c2a1b2c3d4e5f60718").status_code, 404)

    # -------------------------------------------------------
    # Feedback
    # -------------------------------------------------------
    def test_feedback(self):
        prediction_id = self.predict().json()["data"]["predictionId"]

        res = self.client.post("/feedback", json={
            "predictionId": prediction_id, "rating": 2, "correctLabel": 0,
            "comment": "My grandmother wrote this", "feedbackType": "accuracy"})

        self.assertEqual(res.status_code, 201)
        data = res.json()["data"]
        self.assertEqual(data["prediction_id"], prediction_id)
        self.assertIn(data["id"], self.store.feedback)
        self.assertEqual(self.store.predictions[prediction_id].feedback.correct_label, 0)

    def test_feedback_for_unknown_prediction(self):
        res = self.client.post("/feedback", json={"predictionId": "64b7f0c2a1b2c3d4e5f60718", "rating": 5})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(self.store.feedback, {})

    def test_feedback_validation(self):
        prediction_id = self.predict().json()["data"]["predictionId"]
        for payload in ({"predictionId": "12", "rating": 3},
                        {"predictionId": prediction_id, "rating": 6},
                        {"predictionId": prediction_id, "rating": 3, "correctLabel": 2},
                        {"predictionId": prediction_id, "rating": 3, "comment": "x" * 1001},
                        {"predictionId": prediction_id, "rating": 3, "feedbackType": "spam"}):
            res = self.client.post("/feedback", json=payload)
            self.assertEqual(res.status_code, 400, payload)
        self.assertEqual(self.store.feedback, {})

    def test_unencodable_feedback_comment(self):
        prediction_id = self.predict().json()["data"]["predictionId"]
        body = '{"predictionId": "' + prediction_id + '", "rating": 3, "comment": "\\ud800"}'
        res = self.client.post("/feedback", content=body, headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["field"], "comment")
        self.assertEqual(self.store.feedback, {})

    def test_unencodable_text(self):
        body = '{"text": "Wannan \\ud800 labari", "language": "ha"}'
        res = self.client.post("/predictions/predict", content=body, headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 400)
        self.assertFalse(res.json()["success"])
        self.assertEqual(self.backend.client.calls, [])


class ReadSideApiTest(unittest.TestCase):

    def setUp(self):
        print(f"\n🧪 Running {self._testMethodName}...")
        self.store = MagicMock()
        app.dependency_overrides[get_store] = lambda: self.store
        auth_patch = patch("app.utils.get_mongo_collection", side_effect=lambda name: tokens_collection())
        auth_patch.start()
        self.addCleanup(auth_patch.stop)
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def test_statistics(self):
        self.store.overview.return_value = {"totalPredictions": 7, "totalFeedback": 1, "languageStats": []}
        self.store.bias_stats.return_value = [{"_id": "ha", "avgOverallBias": 0.2, "count": 4}]
        self.store.prediction_stats.return_value = []
        self.store.recent.return_value = [{"id": "abc", "language": "pcm"}]

        self.assertEqual(self.client.get("/statistics/overview").json()["data"]["totalPredictions"], 7)
        self.assertEqual(self.client.get("/statistics/bias").json()["data"][0]["_id"], "ha")
        self.assertEqual(self.client.get("/statistics/predictions").json()["data"], [])
        self.assertEqual(self.client.get("/statistics/recent?limit=3").json()["data"][0]["language"], "pcm")
        self.store.recent.assert_called_once_with(3)

    def test_feedback_listing_is_admin_only(self):
        self.store.list_feedback.return_value.model_dump.return_value = {
            "feedback": [], "pagination": {"page": 1, "limit": 20, "total": 0, "pages": 0}}

        self.assertEqual(self.client.get("/feedback").status_code, 401)
        self.assertEqual(self.client.get("/feedback", headers=ALICE).status_code, 403)
        res = self.client.get("/feedback", headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["data"]["pagination"]["total"], 0)

    def test_admin_routes_are_admin_only(self):
        for method, path in (("get", "/admin/dashboard"), ("get", "/admin/performance"),
                             ("post", "/admin/performance")):
            self.assertEqual(getattr(self.client, method)(path).status_code, 401, path)
            self.assertEqual(getattr(self.client, method)(path, headers=ALICE).status_code, 403, path)
        self.store.dashboard.assert_not_called()
        self.store.create_performance.assert_not_called()

    def test_admin_dashboard(self):
        self.store.dashboard.return_value = {
            "totalPredictions": 2, "predictionsByLanguage": [{"_id": "ig", "count": 2}],
            "lowConfidencePredictions": []}
        res = self.client.get("/admin/dashboard", headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["data"]["predictionsByLanguage"][0]["_id"], "ig")

    def test_add_performance(self):
        self.store.create_performance.return_value = "64b7f0c2a1b2c3d4e5f60718"
        res = self.client.post("/admin/performance", headers=ADMIN, json={
            "modelVersion": "afro-xlmr-v2", "language": "pcm", "sampleSize": 250,
            "metrics": {"accuracy": 0.87, "f1Score": 0.85, "precision": 0.84, "recall": 0.86, "auc": 0.9},
            "fairnessMetrics": {"eod": 0.04}})

        self.assertEqual(res.status_code, 201)
        data = res.json()["data"]
        self.assertEqual(data["id"], "64b7f0c2a1b2c3d4e5f60718")
        self.assertEqual(data["metrics"]["f1_score"], 0.85)
        record = self.store.create_performance.call_args.args[0]
        self.assertEqual(record.fairness_metrics.eod, 0.04)
        self.assertEqual(record.fairness_metrics.aaod, 0)

    def test_add_performance_validation(self):
        for payload in ({"language": "en", "sampleSize": 1,
                         "metrics": {"accuracy": 1, "f1Score": 1, "precision": 1, "recall": 1}},
                        {"language": "ha", "sampleSize": 1,
                         "metrics": {"accuracy": 1.2, "f1Score": 1, "precision": 1, "recall": 1}},
                        {"language": "ha", "metrics": {"accuracy": 1, "f1Score": 1, "precision": 1, "recall": 1}}):
            res = self.client.post("/admin/performance", headers=ADMIN, json=payload)
            self.assertEqual(res.status_code, 400, payload)
        self.store.create_performance.assert_not_called()

    def test_health(self):
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()["success"])


if __name__ == "__main__":
    unittest.main()
