"""Tests for the table schema and schema reconciliation."""

import pytest

from sheetllm.tasker.genai_tasker import (
    AugmentRequest,
    EvaluateRequest,
    EvaluationSettings,
    InferenceRequest,
)
from sheetllm.tasker.data_stage.schema import ColumnMeta, ColumnType, SchemaReconciler, TableSchema


def evaluate_request(score_range=7):
    return EvaluateRequest(settings=EvaluationSettings(
        model="judge", evaluation_prompt="{q}", score_range=score_range,
    ))


class TestTableSchema:
    """Ordered names with metadata."""

    def test_insert_operations(self):
        schema = TableSchema.from_names(["a", "c"])
        schema.insert_after("a", "b")
        schema.insert_before("a", "first")
        schema.prepend("zero")
        schema.append("last")
        assert schema.names == ["zero", "first", "a", "b", "c", "last"]

    def test_inserting_existing_name_is_noop(self):
        schema = TableSchema.from_names(["a", "b"])
        assert schema.append("a", ColumnMeta.text(999)) is False
        assert schema.names == ["a", "b"]
        assert schema.meta("a").width != 999

    def test_missing_anchor_appends(self):
        schema = TableSchema.from_names(["a"])
        schema.insert_after("nope", "x")
        schema.insert_before("nope", "y")
        assert schema.names == ["a", "x", "y"]

    def test_dict_round_trip(self):
        schema = TableSchema([
            ("q", ColumnMeta.text(200)),
            ("LLM_Eval", ColumnMeta.dropdown(score_range=5)),
        ])
        data = schema.to_dict()
        assert data == {
            "headers": ["q", "LLM_Eval"],
            "columnWidths": {"q": 200, "LLM_Eval": 100},
            "columnTypes": {"q": {"type": "text"}, "LLM_Eval": {"type": "dropdown", "scoreRange": 5}},
        }
        assert TableSchema.from_dict(data) == schema

    def test_meta_of_unknown_column(self):
        with pytest.raises(KeyError):
            TableSchema().meta("nope")


class TestSchemaReconciler:
    """Columns added per operation."""

    def test_augment_prepends_flag_column(self):
        schema = SchemaReconciler().reconcile(TableSchema.from_names(["q"]), AugmentRequest(2, "p", "q"))
        assert schema.names == ["is_augmented", "q"]
        assert schema.meta("is_augmented").width == 100

    def test_inference_inserts_after_user_input(self):
        schema = TableSchema.from_names(["system", "question", "answer"])
        request = InferenceRequest(model="m1", user_input_column="question")
        updated = SchemaReconciler().reconcile(schema, request)
        assert updated.names == ["system", "question", "m1_assistant", "answer"]
        assert updated.meta("m1_assistant").width == 200
        assert schema.names == ["system", "question", "answer"]

    def test_inference_without_user_input_appends(self):
        updated = SchemaReconciler().reconcile(TableSchema.from_names(["a"]), InferenceRequest(model="m1"))
        assert updated.names == ["a", "m1_assistant"]

    def test_inference_single_column_mode(self):
        reconciler = SchemaReconciler(per_model_column=False)
        updated = reconciler.reconcile(TableSchema.from_names(["q"]), InferenceRequest(model="m1"))
        assert updated.names == ["q", "assistant"]

    def test_evaluate_columns(self):
        updated = SchemaReconciler().reconcile(TableSchema.from_names(["q"]), evaluate_request())
        assert updated.names == ["q", "LLM_Eval_rationale", "LLM_Eval"]
        assert updated.meta("LLM_Eval_rationale").width == 300
        score = updated.meta("LLM_Eval")
        assert score.type == ColumnType.DROPDOWN
        assert score.score_range == 7

    def test_rationale_goes_before_existing_score(self):
        schema = TableSchema([("q", ColumnMeta.text()), ("LLM_Eval", ColumnMeta.dropdown(7)), ("z", ColumnMeta.text())])
        updated = SchemaReconciler().reconcile(schema, evaluate_request())
        assert updated.names == ["q", "LLM_Eval_rationale", "LLM_Eval", "z"]

    def test_score_range_is_updated(self):
        reconciler = SchemaReconciler()
        schema = reconciler.reconcile(TableSchema.from_names(["q"]), evaluate_request(7))
        schema = reconciler.reconcile(schema, evaluate_request(10))
        assert schema.meta("LLM_Eval").score_range == 10

    @pytest.mark.parametrize("request_", [
        AugmentRequest(3, "p", "q"),
        InferenceRequest(model="m1", user_input_column="q"),
        evaluate_request(),
    ])
    def test_idempotent(self, request_):
        reconciler = SchemaReconciler()
        once = reconciler.reconcile(TableSchema.from_names(["q"]), request_)
        twice = reconciler.reconcile(once, request_)
        assert twice == once
        assert len(set(twice.names)) == len(twice.names)
