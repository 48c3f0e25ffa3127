"""Tests for the Flask /llm boundary."""

import pytest

from sheetllm import __version__
from sheetllm.server import create_app

CREDENTIALS = {"providers": [{"name": "openai", "bearerToken": "sk-test-0000000000"}]}


@pytest.fixture
def client(config, fake_provider):
    app = create_app(config, transport=fake_provider.transport)
    app.config["TESTING"] = True
    return app.test_client()


def inference_body(**overrides):
    body = {
        "action": "inference",
        "data": [{"question": "q1"}, {"question": "q2"}],
        "modelName": "m1",
        "userInput": "question",
        "credentials": CREDENTIALS,
    }
    body.update(overrides)
    return body


class TestLLMEndpoint:
    """POST /llm processes one batch."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok", "version": __version__}

    def test_inference(self, client, fake_provider):
        fake_provider.reply = lambda request, body: "answer"
        response = client.post("/llm", json=inference_body())
        assert response.status_code == 200
        assert response.get_json()["result"] == [
            {"question": "q1", "m1_assistant": "answer"},
            {"question": "q2", "m1_assistant": "answer"},
        ]

    def test_row_key_order_is_kept(self, client, fake_provider):
        fake_provider.reply = lambda request, body: "answer"
        response = client.post("/llm", json=inference_body(data=[{"question": "q1", "answer": "x"}]))
        assert list(response.get_json()["result"][0]) == ["question", "answer", "m1_assistant"]

    def test_legacy_api_keys(self, client):
        response = client.post("/llm", json=inference_body(credentials=None,
                                                         apiKeys={"OPENAI_API_KEY": "sk-legacy"}))
        assert response.status_code == 200

    def test_provider_failure_is_inline(self, client, fake_provider):
        import httpx
        fake_provider.reply = lambda request, body: httpx.Response(500, json={})
        response = client.post("/llm", json=inference_body())
        assert response.status_code == 200
        assert all(row["m1_assistant"].startswith("Error occurred during inference:")
                   for row in response.get_json()["result"])

    def test_augment_tags_every_row(self, client, fake_provider):
        fake_provider.reply = lambda request, body: "variant"
        response = client.post("/llm", json={
            "action": "augment",
            "data": [{"question": "q1"}],
            "augmentationFactor": 2,
            "augmentationPrompt": "Paraphrase",
            "selectedColumn": "question",
            "credentials": CREDENTIALS,
        })
        assert response.status_code == 200
        assert [row["is_augmented"] for row in response.get_json()["result"]] == ["No", "Yes"]

    @pytest.mark.parametrize("body,message", [
        ({"action": "summarize", "data": [{"a": 1}]}, "Invalid action"),
        ({"action": "augment", "data": [{"a": 1}], "augmentationFactor": 2}, "Missing augmentation parameters"),
        ({"action": "inference", "modelName": "m1", "data": []}, "Invalid request data"),
        ({"action": "inference", "modelName": "m1", "data": [{"a": 1}]}, "OpenAI API key is not provided"),
        ({"action": "inference", "modelName": "m1", "data": [{"a": 1}], "selectedProvider": "other",
          "credentials": CREDENTIALS}, 'Selected provider "other" not found'),
    ])
    def test_validation_errors(self, client, fake_provider, body, message):
        response = client.post("/llm", json=body)
        assert response.status_code == 400
        assert message in response.get_json()["error"]
        assert fake_provider.requests == []

    def test_non_json_body(self, client):
        response = client.post("/llm", data="not json", content_type="text/plain")
        assert response.status_code == 400

    def test_unexpected_error_hides_stack(self, client, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("sheetllm.server.create_operation", explode)
        response = client.post("/llm", json=inference_body())
        assert response.status_code == 500
        assert response.get_json() == {"error": "boom"}

    def test_unexpected_error_exposes_stack_when_enabled(self, config, fake_provider, monkeypatch):
        config.set("server.expose_stack", True)
        client = create_app(config, transport=fake_provider.transport).test_client()

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("sheetllm.server.create_operation", explode)
        body = client.post("/llm", json=inference_body()).get_json()
        assert body["error"] == "boom"
        assert "RuntimeError" in body["stack"]

    def test_cors_headers(self, client):
        response = client.get("/health", headers={"Origin": "http://editor.test"})
        assert response.headers.get("Access-Control-Allow-Origin") in ("*", "http://editor.test")


class TestRunEndpoint:
    """POST /llm/run processes the whole data set."""

    def test_run_returns_schema_and_batches(self, client, fake_provider):
        fake_provider.reply = lambda request, body: "answer"
        rows = [{"question": f"q{i}", "answer": "x"} for i in range(12)]
        response = client.post("/llm/run", json=inference_body(data=rows))
        assert response.status_code == 200
        body = response.get_json()
        assert body["batches"] == 2
        assert body["errors"] == []
        assert len(body["result"]) == 12
        assert body["schema"]["headers"] == ["question", "m1_assistant", "answer"]
        assert body["schema"]["columnWidths"]["m1_assistant"] == 200
