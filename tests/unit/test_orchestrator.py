"""Tests for batch orchestration: chunking, progress and failure containment."""

import asyncio

import httpx
import pytest

from sheetllm.connector.connector_genai import CredentialStore, ValidationError
from sheetllm.tasker.genai_tasker import (
    AugmentRequest,
    FailureKind,
    InferenceRequest,
    Session,
)
from sheetllm.tasker.data_stage import (
    BATCH_ERROR_MESSAGE,
    DataSet,
    run_operation,
    start_operation,
)

REMOTE_URL = "http://sheet.test/llm"


def make_rows(count):
    return [{"id": i + 1, "question": f"q{i + 1}"} for i in range(count)]


def remote_session(config, provider, credentials=None):
    return Session(credentials=credentials or CredentialStore(), config=config, transport=provider.transport)


def echo_llm(request, body):
    """Fake /llm endpoint answering every row."""
    return {"result": [{**row, "m1_assistant": f"answer {row['id']}"} for row in body["data"]]}


class TestDataSet:
    """Input normalization."""

    def test_schema_follows_first_seen_keys(self):
        dataset = DataSet.from_rows([{"a": 1, "b": 2}, {"c": 3, "a": 4}])
        assert dataset.schema.names == ["a", "b", "c"]

    def test_normalize_fills_explicit_absence(self):
        dataset = DataSet.from_rows([{"a": 1}, {"b": 2}]).normalize()
        assert dataset.rows == [{"a": 1, "b": None}, {"a": None, "b": 2}]


class TestLocalRun:
    """In-process batch execution."""

    def test_progress_after_each_chunk(self, session, fake_provider):
        progress = []
        request = InferenceRequest(model="m1", user_input_column="question")

        result = asyncio.run(run_operation(
            request, DataSet.from_rows(make_rows(25)), session,
            progress_callback=lambda completed, total: progress.append((completed, total)),
        ))

        assert progress == [(10, 25), (20, 25), (25, 25)]
        assert result.batches == 3
        assert len(result.rows) == 25
        assert len(fake_provider.requests) == 25
        assert session.progress.to_dict() == {"completed": 0, "total": 0}

    def test_output_column_added_once(self, session):
        request = InferenceRequest(model="m1", user_input_column="question")
        first = asyncio.run(run_operation(request, DataSet.from_rows(make_rows(3)), session))
        second = asyncio.run(run_operation(request, DataSet(rows=first.rows, schema=first.schema), session))
        assert second.schema.names.count("m1_assistant") == 1
        assert second.schema.names == ["id", "question", "m1_assistant"]

    def test_row_failures_are_reported(self, session, fake_provider):
        def reply(request, body):
            if body["messages"][1]["content"] == "q2":
                return httpx.Response(500, json={})
            return "fine"

        fake_provider.reply = reply
        request = InferenceRequest(model="m1", user_input_column="question")

        result = asyncio.run(run_operation(request, DataSet.from_rows(make_rows(3)), session))

        assert result.success
        assert len(result.failures) == 1
        assert result.failures[0].kind == FailureKind.PROVIDER_CALL_FAILED
        assert result.rows[1]["m1_assistant"].startswith("Error occurred during inference:")

    def test_augment_is_flattened(self, session, fake_provider):
        fake_provider.reply = lambda request, body: "variant"
        request = AugmentRequest(factor=3, prompt="p", column="question")

        result = asyncio.run(run_operation(request, DataSet.from_rows(make_rows(4)), session))

        assert len(result.rows) == 12
        assert all("is_augmented" in row for row in result.rows)
        assert [row["is_augmented"] for row in result.rows[:3]] == ["No", "Yes", "Yes"]
        assert result.schema.names[0] == "is_augmented"

    def test_empty_dataset_is_rejected(self, session):
        with pytest.raises(ValidationError):
            asyncio.run(run_operation(InferenceRequest(model="m1"), DataSet(rows=[]), session))

    def test_missing_credential_aborts_before_any_call(self, config, fake_provider):
        session = Session(credentials=CredentialStore(), config=config, transport=fake_provider.transport)
        with pytest.raises(ValidationError):
            asyncio.run(run_operation(InferenceRequest(model="m1"), DataSet.from_rows(make_rows(5)), session))
        assert fake_provider.requests == []
        assert session.progress.to_dict() == {"completed": 0, "total": 0}

    def test_batch_size_from_config(self, session):
        session.config.set("batch.size", 4)
        result = asyncio.run(run_operation(InferenceRequest(model="m1"), DataSet.from_rows(make_rows(9)), session))
        assert result.batches == 3


class TestRemoteRun:
    """Chunks posted to a /llm endpoint."""

    def test_three_batch_calls_for_25_rows(self, config, provider_factory):
        endpoint = provider_factory(echo_llm)
        session = remote_session(config, endpoint)
        progress = []

        result = asyncio.run(run_operation(
            InferenceRequest(model="m1", user_input_column="question"),
            DataSet.from_rows(make_rows(25)), session,
            progress_callback=lambda completed, total: progress.append((completed, total)),
            remote_url=REMOTE_URL,
        ))

        assert len(endpoint.requests) == 3
        assert [len(body["data"]) for body in endpoint.bodies()] == [10, 10, 5]
        assert progress == [(10, 25), (20, 25), (25, 25)]
        assert result.rows[24]["m1_assistant"] == "answer 25"

        body = endpoint.bodies()[0]
        assert body["action"] == "inference"
        assert body["modelName"] == "m1"
        assert body["credentials"]["providers"][0]["name"] == "openai"

    def test_failed_batch_becomes_error_rows(self, config, provider_factory):
        calls = []

        def reply(request, body):
            calls.append(body)
            if len(calls) == 2:
                return httpx.Response(502, text="bad gateway")
            return echo_llm(request, body)

        endpoint = provider_factory(reply)
        session = remote_session(config, endpoint)

        result = asyncio.run(run_operation(
            InferenceRequest(model="m1", user_input_column="question"),
            DataSet.from_rows(make_rows(25)), session, remote_url=REMOTE_URL,
        ))

        assert len(result.rows) == 25
        errored = [row["id"] for row in result.rows if row.get("error") == BATCH_ERROR_MESSAGE]
        assert errored == list(range(11, 21))
        assert result.rows[0]["m1_assistant"] == "answer 1"
        assert result.rows[0]["error"] is None
        assert len(result.errors) == 1
        assert not result.success
        assert result.outcomes[10].failures[0].kind == FailureKind.TRANSPORT
        assert result.outcomes[10].failures[0].status == 502
        assert "error" in result.schema

    def test_remote_augment_groups_variants(self, config, provider_factory):
        def reply(request, body):
            rows = []
            for row in body["data"]:
                rows.append({**row, "is_augmented": "No"})
                rows.append({**row, "question": "v", "is_augmented": "Yes"})
            return {"result": rows}

        endpoint = provider_factory(reply)
        result = asyncio.run(run_operation(
            AugmentRequest(factor=2, prompt="p", column="question"),
            DataSet.from_rows(make_rows(3)), remote_session(config, endpoint), remote_url=REMOTE_URL,
        ))
        assert len(result.rows) == 6
        assert [len(outcome.rows) for outcome in result.outcomes] == [2, 2, 2]

    def test_body_without_result_is_transport_error(self, config, provider_factory):
        endpoint = provider_factory(lambda request, body: {"unexpected": True})
        result = asyncio.run(run_operation(
            InferenceRequest(model="m1"), DataSet.from_rows(make_rows(2)),
            remote_session(config, endpoint), remote_url=REMOTE_URL,
        ))
        assert all(row["error"] == BATCH_ERROR_MESSAGE for row in result.rows)

    def test_short_result_is_transport_error(self, config, provider_factory):
        def reply(request, body):
            return {"result": echo_llm(request, body)["result"][:-1]}

        endpoint = provider_factory(reply)
        result = asyncio.run(run_operation(
            InferenceRequest(model="m1", user_input_column="question"),
            DataSet.from_rows(make_rows(25)), remote_session(config, endpoint), remote_url=REMOTE_URL,
        ))
        assert len(result.rows) == 25
        assert [row["id"] for row in result.rows] == list(range(1, 26))
        assert all(row["error"] == BATCH_ERROR_MESSAGE for row in result.rows)
        assert len(result.errors) == 3

    def test_remote_augment_missing_group_is_transport_error(self, config, provider_factory):
        def reply(request, body):
            first = body["data"][0]
            return {"result": [{**first, "is_augmented": "No"}, {**first, "is_augmented": "Yes"}]}

        endpoint = provider_factory(reply)
        result = asyncio.run(run_operation(
            AugmentRequest(factor=2, prompt="p", column="question"),
            DataSet.from_rows(make_rows(3)), remote_session(config, endpoint), remote_url=REMOTE_URL,
        ))
        assert len(result.rows) == 3
        assert all(row["error"] == BATCH_ERROR_MESSAGE for row in result.rows)
        assert result.outcomes[0].failures[0].kind == FailureKind.TRANSPORT


class TestOperationRun:
    """Background runs with a progress iterator."""

    def test_progress_iterator_and_result(self, session):
        async def scenario():
            run = start_operation(InferenceRequest(model="m1"), DataSet.from_rows(make_rows(15)), session)
            snapshots = [snapshot.to_dict() async for snapshot in run.progress()]
            return snapshots, await run.result()

        snapshots, result = asyncio.run(scenario())
        assert snapshots == [{"completed": 10, "total": 15}, {"completed": 15, "total": 15}]
        assert len(result.rows) == 15

    def test_cancellation_discards_partial_results(self, session, fake_provider):
        async def scenario():
            run = start_operation(InferenceRequest(model="m1"), DataSet.from_rows(make_rows(30)), session)
            async for snapshot in run.progress():
                if snapshot.completed == 10:
                    run.task.cancel()
            await run.result()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scenario())
        assert session.progress.to_dict() == {"completed": 0, "total": 0}
