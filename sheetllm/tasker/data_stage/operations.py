"""
Data Stage Operations - Row-level executors for the sheet operations.

This module contains the three operations a batch can run:
- InferenceOperation: send each row through a chat model, store the reply
- EvaluateOperation: score each row with an LLM judge against a rubric
- AugmentOperation: expand each row into paraphrased variants

Every executor is bound once per run (which resolves the provider service and
raises ValidationError before any network call) and then processes the rows of
a batch concurrently. Failures are contained per row and reported through
RowOutcome.

License: MIT
"""

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from ...config import Config
from ...connector.connector_genai import (
    ChatRequest,
    GenerativeAIService,
    ProviderCallFailed,
    SamplingParams,
    ValidationError,
    get_service_for_provider,
)
from ..genai_tasker import (
    AugmentRequest,
    EvaluateRequest,
    InferenceRequest,
    OperationFailure,
    OperationRequest,
    OperationType,
    Row,
    RowOutcome,
    Session,
    UnexpectedOperationFailure,
    logger,
)
from .schema import IS_AUGMENTED_COLUMN

INFERENCE_ERROR_PREFIX = "Error occurred during inference:"
EVALUATION_ERROR_RATIONALE = "An error occurred during evaluation"
EVALUATION_ERROR_SCORE = "Error"
SCORE_FALLBACK = "N/A"

SCORE_PATTERN = re.compile(r"(?:[Ss]core|평가 점수)\s*:\s*(\d+)\s*/\s*\d+")


def cell_text(row: Row, column: Optional[str]) -> str:
    """Cell value as text; an unset column or a missing/None cell reads as ''."""
    if not column:
        return ""
    value = row.get(column)
    return "" if value is None else str(value)


def extract_score(text: str) -> str:
    """
    Pulls the score out of a judge response.

    Accepts ``Score: 5/7``, ``score: 5 / 7`` and ``평가 점수: 5/7``; returns
    "N/A" when no score is present.
    """
    match = SCORE_PATTERN.search(text)
    return match.group(1) if match else SCORE_FALLBACK


class RowOperation(ABC):
    """
    Abstract base class for row operations.

    Subclasses must implement:
        - operation_type: The type identifier for the operation
        - provider / model: Which backend to bind
        - process_row(): Produce the output rows for one input row
        - failed_row(): The degraded row written when processing fails
    """

    def __init__(self, request: OperationRequest, config: Config):
        self.request = request
        self.config = config
        self._service: Optional[GenerativeAIService] = None

    @property
    @abstractmethod
    def operation_type(self) -> OperationType:
        """Return the operation type identifier."""

    @property
    @abstractmethod
    def provider(self) -> str:
        """Credential name used by this operation."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier sent to the provider."""

    @property
    def host_url(self) -> Optional[str]:
        return None

    @property
    def service(self) -> GenerativeAIService:
        if self._service is None:
            raise RuntimeError(f"{self.__class__.__name__} is not bound to a session")
        return self._service

    def bind(self, session: Session, client: httpx.AsyncClient) -> "RowOperation":
        """
        Resolves the provider service for this run.

        Raises:
            ValidationError: If the credential, model or host is missing.
        """
        self._service = get_service_for_provider(
            provider=self.provider,
            model=self.model,
            credentials=session.credentials,
            client=client,
            host_url=self.host_url,
            config=self.config,
        )
        logger.debug(f"{self.operation_type.value}: bound {self._service!r}")
        return self

    async def complete(self, request: ChatRequest) -> str:
        completion = await self.service.generate_completion(request)
        return completion.text

    @abstractmethod
    async def process_row(self, row: Row) -> RowOutcome:
        """Process one row; provider failures propagate to ``run_row``."""

    @abstractmethod
    def failed_row(self, row: Row, failure: OperationFailure) -> Row:
        """The row written in place of the result when processing fails."""

    async def run_row(self, row: Row) -> RowOutcome:
        """Processes one row, containing any failure in the returned outcome."""
        try:
            return await self.process_row(row)
        except ProviderCallFailed as e:
            failure = OperationFailure.from_exception(e)
        except Exception as e:
            wrapped = UnexpectedOperationFailure(f"{type(e).__name__}: {e}")
            wrapped.__cause__ = e
            failure = OperationFailure.from_exception(wrapped)
            logger.exception(f"{self.operation_type.value}: unexpected failure on row")
        logger.warning(f"{self.operation_type.value}: row failed ({failure.kind.value}): {failure.message}")
        return RowOutcome(rows=[self.failed_row(row, failure)], failures=[failure])

    async def run_batch(self, rows: List[Row]) -> List[RowOutcome]:
        """
        Runs every row of the batch concurrently.

        Outcomes are returned in input order.
        """
        if not rows:
            raise ValidationError(f"No data provided for {self.operation_type.value}")
        return list(await asyncio.gather(*(self.run_row(row) for row in rows)))


class InferenceOperation(RowOperation):
    """
    Sends the system-prompt and user-input cells of each row to a chat model.

    The reply goes to ``<model>_assistant`` (or ``assistant`` when per-model
    columns are disabled, or the request's explicit output column).
    """
    request: InferenceRequest

    def __init__(self, request: InferenceRequest, config: Config):
        super().__init__(request, config)
        self.output_column = request.resolve_output_column(
            bool(config.get("inference.per_model_column", True))
        )
        self.sampling = SamplingParams(
            max_tokens=config.get("inference.max_tokens", 400, type=int),
            temperature=config.get("inference.temperature", 0.5, type=float),
            top_p=config.get("inference.top_p", 0.8, type=float),
            frequency_penalty=config.get("inference.frequency_penalty", 0.0, type=float),
            presence_penalty=config.get("inference.presence_penalty", 0.0, type=float),
            top_k=config.get("inference.top_k", 0, type=int),
            repeat_penalty=config.get("inference.repeat_penalty", 5.0, type=float),
        )

    @property
    def operation_type(self) -> OperationType:
        return OperationType.INFERENCE

    @property
    def provider(self) -> str:
        return self.request.provider

    @property
    def model(self) -> str:
        return self.request.model

    @property
    def host_url(self) -> Optional[str]:
        return self.request.host_url

    def build_chat(self, row: Row) -> ChatRequest:
        return ChatRequest(
            model=self.request.model,
            system=cell_text(row, self.request.system_prompt_column),
            user=cell_text(row, self.request.user_input_column),
            sampling=self.sampling,
        )

    async def process_row(self, row: Row) -> RowOutcome:
        text = await self.complete(self.build_chat(row))
        return RowOutcome(rows=[{**row, self.output_column: text}])

    def failed_row(self, row: Row, failure: OperationFailure) -> Row:
        return {**row, self.output_column: f"{INFERENCE_ERROR_PREFIX} {failure.message}"}


class EvaluateOperation(RowOperation):
    """
    Scores each row with an LLM judge.

    The evaluation prompt may reference ``{<column>}`` for any selected column,
    ``{scoreRange}`` and ``{scoreCriteria}``. The full judge response is stored
    as the rationale and the extracted score in the score column.
    """
    request: EvaluateRequest

    def __init__(self, request: EvaluateRequest, config: Config):
        super().__init__(request, config)
        self.rationale_column = config.get("evaluate.rationale_column", "LLM_Eval_rationale")
        self.score_column = config.get("evaluate.score_column", "LLM_Eval")

    @property
    def operation_type(self) -> OperationType:
        return OperationType.EVALUATE

    @property
    def provider(self) -> str:
        return self.request.settings.provider

    @property
    def model(self) -> str:
        return self.request.settings.model

    def render_prompt(self, row: Row) -> str:
        settings = self.request.settings
        prompt = settings.evaluation_prompt
        for column in settings.selected_columns:
            prompt = prompt.replace(f"{{{column}}}", cell_text(row, column))
        prompt = prompt.replace("{scoreRange}", str(settings.score_range))
        return prompt.replace("{scoreCriteria}", settings.render_criteria())

    async def process_row(self, row: Row) -> RowOutcome:
        text = await self.complete(ChatRequest(model=self.model, user=self.render_prompt(row)))
        return RowOutcome(rows=[{
            **row,
            self.rationale_column: text,
            self.score_column: extract_score(text),
        }])

    def failed_row(self, row: Row, failure: OperationFailure) -> Row:
        return {
            **row,
            self.rationale_column: EVALUATION_ERROR_RATIONALE,
            self.score_column: EVALUATION_ERROR_SCORE,
        }


class AugmentOperation(RowOperation):
    """
    Expands each row into up to ``factor`` rows.

    The original row comes first (``is_augmented="No"``), followed by one
    paraphrase per successful generation (``is_augmented="Yes"``). Failed
    generations are dropped, so a row yields between 1 and ``factor`` rows.
    """
    request: AugmentRequest

    @property
    def operation_type(self) -> OperationType:
        return OperationType.AUGMENT

    @property
    def provider(self) -> str:
        return self.request.provider

    @property
    def model(self) -> str:
        return self.request.model

    async def _generate(self, row: Row, source: str) -> Any:
        try:
            text = await self.complete(ChatRequest(model=self.model, system=self.request.prompt, user=source))
        except ProviderCallFailed as e:
            return OperationFailure.from_exception(e)
        except Exception as e:
            logger.exception("augment: unexpected failure in generation")
            wrapped = UnexpectedOperationFailure(f"{type(e).__name__}: {e}")
            wrapped.__cause__ = e
            return OperationFailure.from_exception(wrapped)
        return {**row, self.request.column: text, IS_AUGMENTED_COLUMN: "Yes"}

    async def process_row(self, row: Row) -> RowOutcome:
        source = cell_text(row, self.request.column)
        generated = await asyncio.gather(
            *(self._generate(row, source) for _ in range(self.request.factor - 1))
        )
        rows = [{**row, IS_AUGMENTED_COLUMN: "No"}]
        failures = []
        for item in generated:
            if isinstance(item, OperationFailure):
                logger.warning(f"augment: generation dropped: {item.message}")
                failures.append(item)
            else:
                rows.append(item)
        return RowOutcome(rows=rows, failures=failures)

    def failed_row(self, row: Row, failure: OperationFailure) -> Row:
        return {**row, IS_AUGMENTED_COLUMN: "No"}


OPERATIONS = {
    OperationType.INFERENCE: InferenceOperation,
    OperationType.EVALUATE: EvaluateOperation,
    OperationType.AUGMENT: AugmentOperation,
}


def create_operation(request: OperationRequest, config: Config) -> RowOperation:
    """Factory returning the executor for ``request.kind``."""
    return OPERATIONS[request.kind](request, config)
