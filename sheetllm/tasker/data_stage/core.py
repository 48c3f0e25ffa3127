"""
Data Stage Core - Batch orchestration for sheet operations.

This module provides the core infrastructure for running an operation over a
whole sheet: the DataSet container, the batch runners (in-process or through a
remote ``/llm`` endpoint) and the DataStageExecutor, which splits rows into
fixed-size chunks, runs the chunks one after another, reports progress and
reconciles the column schema at the end.

License: MIT
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from ..genai_tasker import (
    BatchProgress,
    BatchTransportError,
    OperationFailure,
    OperationRequest,
    OperationType,
    Row,
    RowOutcome,
    Session,
    ValidationError,
    event_log,
    logger,
    request_to_payload,
)
from .operations import RowOperation, create_operation
from .schema import IS_AUGMENTED_COLUMN, SchemaReconciler, TableSchema

BATCH_ERROR_COLUMN = "error"
BATCH_ERROR_MESSAGE = "Error occurred during processing"

ProgressCallback = Callable[[int, int], None]


@dataclass
class DataSet:
    """
    Rectangular data: ordered rows plus the column schema.

    Attributes:
        rows: Each row maps column name to a string, a number or None.
        schema: Ordered column names with display metadata.
    """
    rows: List[Row]
    schema: TableSchema = field(default_factory=TableSchema)

    @classmethod
    def from_rows(cls, rows: List[Row], headers: Optional[List[str]] = None) -> "DataSet":
        """Builds a data set; without headers the schema follows first-seen key order."""
        if headers is None:
            headers = []
            for row in rows:
                for key in row:
                    if key not in headers:
                        headers.append(key)
        return cls(rows=[dict(row) for row in rows], schema=TableSchema.from_names(headers))

    def normalize(self) -> "DataSet":
        """Gives every row a value or an explicit None for every declared column."""
        names = self.schema.names
        for row in self.rows:
            for name in names:
                row.setdefault(name, None)
        return self

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class OperationResult:
    """
    Result container for a full operation run.

    Attributes:
        rows: Flattened output rows (augment may yield more rows than it received).
        outcomes: Per input row outcome, in input order.
        schema: Column schema after reconciliation.
        batches: Number of chunks processed.
        errors: One message per failed chunk.
        execution_time: Total execution time in seconds.
        operation_type: Operation that was run.
    """
    rows: List[Row]
    outcomes: List[RowOutcome]
    schema: TableSchema
    batches: int = 0
    errors: List[str] = field(default_factory=list)
    execution_time: float = 0.0
    operation_type: str = ""

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def failures(self) -> List[OperationFailure]:
        return [failure for outcome in self.outcomes for failure in outcome.failures]

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "result": self.rows,
            "schema": self.schema.to_dict(),
            "errors": self.errors,
            "batches": self.batches,
            "failed_rows": sum(1 for outcome in self.outcomes if not outcome.ok),
            "execution_time": self.execution_time,
            "operation_type": self.operation_type,
        }


# --- Batch runners ---

class BatchRunner(ABC):
    """Runs one chunk of rows and returns their outcomes."""

    @abstractmethod
    async def run(self, rows: List[Row]) -> List[RowOutcome]:
        pass


class LocalBatchRunner(BatchRunner):
    """Runs chunks in-process with a bound row operation."""

    def __init__(self, operation: RowOperation):
        self.operation = operation

    async def run(self, rows: List[Row]) -> List[RowOutcome]:
        return await self.operation.run_batch(rows)


class RemoteBatchRunner(BatchRunner):
    """
    Posts each chunk to a ``/llm`` endpoint.

    Any transport problem (connection error, non-2xx, body without a
    ``result`` list) raises BatchTransportError. The endpoint reports row
    failures inline in the cells, so outcomes built here carry no failures.
    """

    def __init__(self, url: str, request: OperationRequest, session: Session, client: httpx.AsyncClient):
        self.url = url
        self.request = request
        self.client = client
        self._body = request_to_payload(request)
        self._body["credentials"] = session.credentials.to_payload()

    async def run(self, rows: List[Row]) -> List[RowOutcome]:
        try:
            response = await self.client.post(self.url, json={**self._body, "data": rows})
        except httpx.HTTPError as e:
            raise BatchTransportError(f"Batch request to {self.url} failed: {e}") from e

        if response.is_error:
            raise BatchTransportError(
                f"Batch request to {self.url} returned HTTP {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        try:
            result = response.json().get("result")
        except (ValueError, AttributeError) as e:
            raise BatchTransportError(
                f"Batch response from {self.url} is not valid JSON",
                status=response.status_code,
                body=response.text,
            ) from e
        if not isinstance(result, list):
            raise BatchTransportError(
                f"Batch response from {self.url} has no 'result' list",
                status=response.status_code,
                body=response.text,
            )
        outcomes = self._to_outcomes(result)
        if len(outcomes) != len(rows):
            raise BatchTransportError(
                f"Batch response from {self.url} covers {len(outcomes)} rows, expected {len(rows)}",
                status=response.status_code,
                body=response.text,
            )
        return outcomes

    def _to_outcomes(self, result: List[Row]) -> List[RowOutcome]:
        if self.request.kind != OperationType.AUGMENT:
            return [RowOutcome(rows=[row]) for row in result]
        # An original row ("No") opens a group; its variants ("Yes") follow it.
        outcomes: List[RowOutcome] = []
        for row in result:
            if not outcomes or row.get(IS_AUGMENTED_COLUMN, "No") != "Yes":
                outcomes.append(RowOutcome(rows=[row]))
            else:
                outcomes[-1].rows.append(row)
        return outcomes


# --- Orchestrator ---

class DataStageExecutor:
    """
    Main executor class for sheet operations.

    Splits rows into chunks of ``session.batch_size``, runs chunks strictly in
    sequence (rows within a chunk run concurrently), contains chunk failures,
    reports progress and reconciles the schema.

    Attributes:
        session: Credentials, configuration and progress for the run.
        remote_url: When set, chunks are posted to this ``/llm`` endpoint
            instead of being run in-process.
    """

    def __init__(self, session: Session, remote_url: Optional[str] = None):
        self.session = session
        self.remote_url = remote_url
        config = session.config
        self.reconciler = SchemaReconciler(
            rationale_column=config.get("evaluate.rationale_column", "LLM_Eval_rationale"),
            score_column=config.get("evaluate.score_column", "LLM_Eval"),
            per_model_column=session.per_model_column,
        )

    def _create_runner(self, request: OperationRequest, client: httpx.AsyncClient) -> BatchRunner:
        if self.remote_url:
            return RemoteBatchRunner(self.remote_url, request, self.session, client)
        operation = create_operation(request, self.session.config)
        return LocalBatchRunner(operation.bind(self.session, client))

    def _create_batches(self, rows: List[Row]) -> List[List[Row]]:
        size = max(1, self.session.batch_size)
        return [rows[i:i + size] for i in range(0, len(rows), size)]

    @staticmethod
    def _failed_batch(rows: List[Row], error: Exception) -> List[RowOutcome]:
        failure = OperationFailure.from_exception(error)
        return [
            RowOutcome(rows=[{**row, BATCH_ERROR_COLUMN: BATCH_ERROR_MESSAGE}], failures=[failure])
            for row in rows
        ]

    @event_log(message="Data Stage Execution")
    async def execute(
        self,
        request: OperationRequest,
        dataset: DataSet,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> OperationResult:
        """
        Execute an operation over every row of ``dataset``.

        Args:
            request: The operation to run.
            dataset: Input rows and schema.
            progress_callback: Optional callback(completed_rows, total_rows),
                called after each chunk.

        Returns:
            OperationResult with output rows and the reconciled schema.

        Raises:
            ValidationError: If the data set is empty or the operation cannot
                be bound (missing credential, model or host).
        """
        if not dataset.rows:
            raise ValidationError("No data provided")

        start_time = time.time()
        progress = self.session.progress
        progress.reset()
        progress.total = len(dataset.rows)

        batches = self._create_batches(dataset.rows)
        logger.info(f"Processing {len(dataset.rows)} rows in {len(batches)} batches ({request.kind.value})")

        outcomes: List[RowOutcome] = []
        errors: List[str] = []
        try:
            async with self.session.open_client() as client:
                runner = self._create_runner(request, client)
                for index, batch in enumerate(batches, start=1):
                    logger.info(f"Processing batch {index}/{len(batches)} ({len(batch)} rows)")
                    try:
                        batch_outcomes = await runner.run(batch)
                    except Exception as e:
                        error_msg = f"Batch {index} failed: {e}"
                        logger.error(error_msg)
                        errors.append(error_msg)
                        batch_outcomes = self._failed_batch(batch, e)
                    outcomes.extend(batch_outcomes)

                    progress.completed = min(progress.completed + len(batch), progress.total)
                    if progress_callback:
                        progress_callback(progress.completed, progress.total)
        finally:
            progress.reset()

        rows = [row for outcome in outcomes for row in outcome.rows]
        if request.kind == OperationType.AUGMENT:
            for row in rows:
                row.setdefault(IS_AUGMENTED_COLUMN, "No")

        schema = self.reconciler.reconcile(dataset.schema, request)
        if errors:
            schema.append(BATCH_ERROR_COLUMN)
        output = DataSet(rows=rows, schema=schema).normalize()

        return OperationResult(
            rows=output.rows,
            outcomes=outcomes,
            schema=schema,
            batches=len(batches),
            errors=errors,
            execution_time=time.time() - start_time,
            operation_type=request.kind.value,
        )


class OperationRun:
    """
    Handle on an operation started in the background.

    ``progress()`` yields a BatchProgress snapshot after every chunk and stops
    when the run ends; ``result()`` awaits the OperationResult. Cancelling
    ``task`` discards partial results.
    """

    def __init__(self, executor: DataStageExecutor, request: OperationRequest, dataset: DataSet,
                 progress_callback: Optional[ProgressCallback] = None):
        self._queue: "asyncio.Queue[Optional[BatchProgress]]" = asyncio.Queue()
        self._callback = progress_callback
        self.task = asyncio.ensure_future(executor.execute(request, dataset, self._on_progress))
        self.task.add_done_callback(lambda _: self._queue.put_nowait(None))

    def _on_progress(self, completed: int, total: int) -> None:
        self._queue.put_nowait(BatchProgress(completed=completed, total=total))
        if self._callback:
            self._callback(completed, total)

    async def progress(self) -> AsyncIterator[BatchProgress]:
        while True:
            snapshot = await self._queue.get()
            if snapshot is None:
                return
            yield snapshot

    async def result(self) -> OperationResult:
        return await self.task

    def done(self) -> bool:
        return self.task.done()


async def run_operation(
    request: OperationRequest,
    dataset: DataSet,
    session: Session,
    progress_callback: Optional[ProgressCallback] = None,
    remote_url: Optional[str] = None,
) -> OperationResult:
    """
    Runs ``request`` over ``dataset`` and returns the result.

    Example:
        >>> session = Session(CredentialStore.from_payload({"OPENAI_API_KEY": "sk-..."}))
        >>> data = DataSet.from_rows([{"question": "2+2?"}])
        >>> result = asyncio.run(run_operation(InferenceRequest(model="gpt-4o-mini",
        ...                                    user_input_column="question"), data, session))
    """
    executor = DataStageExecutor(session, remote_url=remote_url)
    return await executor.execute(request, dataset, progress_callback)


def start_operation(
    request: OperationRequest,
    dataset: DataSet,
    session: Session,
    progress_callback: Optional[ProgressCallback] = None,
    remote_url: Optional[str] = None,
) -> OperationRun:
    """Starts ``request`` as a task on the running event loop and returns its handle."""
    return OperationRun(DataStageExecutor(session, remote_url=remote_url), request, dataset, progress_callback)
