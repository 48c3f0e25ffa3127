"""
Data Stage - Batch sheet operations

This module runs the sheet operations (inference, evaluate, augment) over a
whole data set: fixed-size chunks run one after another, the rows of a chunk
run concurrently, and the column schema is reconciled at the end.

Usage:
    from sheetllm.tasker.data_stage import DataSet, run_operation

    result = await run_operation(request, DataSet.from_rows(rows), session)

License: MIT
"""

from .core import (
    # Core Classes
    DataSet,
    DataStageExecutor,
    OperationResult,
    OperationRun,
    # Runners
    BatchRunner,
    LocalBatchRunner,
    RemoteBatchRunner,
    # Entry points
    run_operation,
    start_operation,
    BATCH_ERROR_COLUMN,
    BATCH_ERROR_MESSAGE,
)

from .operations import (
    RowOperation,
    InferenceOperation,
    EvaluateOperation,
    AugmentOperation,
    create_operation,
    extract_score,
)

from .schema import (
    ColumnType,
    ColumnMeta,
    TableSchema,
    SchemaReconciler,
)

__all__ = [
    # Core
    "DataSet",
    "DataStageExecutor",
    "OperationResult",
    "OperationRun",
    "BatchRunner",
    "LocalBatchRunner",
    "RemoteBatchRunner",
    "run_operation",
    "start_operation",
    "BATCH_ERROR_COLUMN",
    "BATCH_ERROR_MESSAGE",
    # Operations
    "RowOperation",
    "InferenceOperation",
    "EvaluateOperation",
    "AugmentOperation",
    "create_operation",
    "extract_score",
    # Schema
    "ColumnType",
    "ColumnMeta",
    "TableSchema",
    "SchemaReconciler",
]
