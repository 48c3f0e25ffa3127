"""
Tasker - Sheet operation management

Components:
- genai_tasker: Logging helpers, operation requests, row outcomes and Session
- data_stage: Batch orchestration, row executors and the column schema
"""

from .genai_tasker import (
    OperationType,
    InferenceRequest,
    EvaluationSettings,
    EvaluateRequest,
    AugmentRequest,
    OperationRequest,
    request_from_payload,
    request_to_payload,
    FailureKind,
    OperationFailure,
    RowOutcome,
    BatchProgress,
    Session,
    UnexpectedOperationFailure,
    BatchTransportError,
    configure_logging,
    msg_log,
    event_log,
)

__all__ = [
    "OperationType",
    "InferenceRequest",
    "EvaluationSettings",
    "EvaluateRequest",
    "AugmentRequest",
    "OperationRequest",
    "request_from_payload",
    "request_to_payload",
    "FailureKind",
    "OperationFailure",
    "RowOutcome",
    "BatchProgress",
    "Session",
    "UnexpectedOperationFailure",
    "BatchTransportError",
    "configure_logging",
    "msg_log",
    "event_log",
]
