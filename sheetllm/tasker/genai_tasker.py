"""
GenAI Tasker - Sheet operation requests, outcomes and session

This module holds the pieces every sheet operation shares: logging helpers,
the operation request types (inference, evaluate, augment), the explicit
per-row outcome type and the Session that carries credentials, configuration
and progress for a run.

License: MIT
"""

import functools
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx

from ..config import Config, load_config
from ..connector.connector_genai import (
    DEFAULT_PROVIDER,
    CredentialStore,
    ProviderCallFailed,
    ProviderFailureKind,
    SheetLLMError,
    ValidationError,
    resolve_ssl_verify,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("SheetLLM.Tasker")

Row = Dict[str, Any]


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Attach a stream handler with the standard SheetLLM format to the root logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])


def msg_log(message: str, level: int = logging.INFO) -> None:
    """
    Log a message on the tasker logger.

    Args:
        message: The message to log.
        level: The logging level (default: INFO).
    """
    logger.log(level, message)


def event_log(message: Optional[str] = None, level: int = logging.INFO):
    """
    Decorator for managing log messages at function entry and exit.

    Works on plain and ``async`` functions. Logs when the call starts,
    completes, or raises (the exception is re-raised).

    Args:
        message: Custom message to display. Defaults to function name.
        level: The logging level (default: INFO).
    """
    def decorator(func):
        act_msg = message if message else f"Execution of {func.__name__}"

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                msg_log(f"Starting: {act_msg}", level)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    msg_log(f"Error in {act_msg}: {e}", logging.ERROR)
                    raise
                msg_log(f"Completed: {act_msg}", level)
                return result
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            msg_log(f"Starting: {act_msg}", level)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                msg_log(f"Error in {act_msg}: {e}", logging.ERROR)
                raise
            msg_log(f"Completed: {act_msg}", level)
            return result
        return wrapper
    return decorator


# --- Errors ---

class UnexpectedOperationFailure(SheetLLMError):
    """Anything other than a provider failure raised while processing a row."""


class BatchTransportError(SheetLLMError):
    """The call that carries a whole batch failed (remote /llm endpoint)."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


# --- Operation requests ---

class OperationType(Enum):
    """The three sheet operations."""
    INFERENCE = "inference"
    EVALUATE = "evaluate"
    AUGMENT = "augment"


@dataclass
class InferenceRequest:
    """
    Run each row through a chat model and store the reply.

    Attributes:
        model: Model identifier sent to the provider.
        provider: Credential name to use ("openai", "clova" or a custom name).
        system_prompt_column: Column holding the system prompt (None -> empty).
        user_input_column: Column holding the user message (None -> empty).
        host_url: URL of a generic bearer-token host.
        output_column: Explicit output column; derived from the model when None.
    """
    model: str
    provider: str = DEFAULT_PROVIDER
    system_prompt_column: Optional[str] = None
    user_input_column: Optional[str] = None
    host_url: Optional[str] = None
    output_column: Optional[str] = None
    kind: OperationType = field(default=OperationType.INFERENCE, init=False)

    def resolve_output_column(self, per_model_column: bool = True) -> str:
        if self.output_column:
            return self.output_column
        return f"{self.model}_assistant" if per_model_column else "assistant"


@dataclass
class EvaluationSettings:
    """Rubric and judge model used by the evaluate operation."""
    model: str
    evaluation_prompt: str
    score_range: int
    score_criteria: Dict[int, str] = field(default_factory=dict)
    selected_columns: List[str] = field(default_factory=list)
    provider: str = DEFAULT_PROVIDER

    def render_criteria(self) -> str:
        """One line per score, ascending: ``"<score> points: <description>"``."""
        return "\n".join(
            f"{score} points: {description}"
            for score, description in sorted(self.score_criteria.items())
        )


@dataclass
class EvaluateRequest:
    settings: EvaluationSettings
    kind: OperationType = field(default=OperationType.EVALUATE, init=False)


@dataclass
class AugmentRequest:
    """
    Expand each row into ``factor`` variants by paraphrasing ``column``.

    Attributes:
        factor: Output rows per input row, original included (>= 1).
        prompt: Augmentation instruction sent as the system message.
        column: Source column whose text is paraphrased.
        model: Generation model.
        provider: Credential name to use.
    """
    factor: int
    prompt: str
    column: str
    model: str = "gpt-4"
    provider: str = DEFAULT_PROVIDER
    kind: OperationType = field(default=OperationType.AUGMENT, init=False)


OperationRequest = Union[InferenceRequest, EvaluateRequest, AugmentRequest]


def _parse_evaluation_settings(raw: Any) -> EvaluationSettings:
    if not isinstance(raw, dict):
        raise ValidationError("Missing evaluation settings")

    model = raw.get("model")
    prompt = raw.get("evaluationPrompt")
    if not model or not prompt:
        raise ValidationError("Evaluation settings require 'model' and 'evaluationPrompt'")

    try:
        score_range = int(raw.get("scoreRange"))
    except (TypeError, ValueError):
        raise ValidationError("Evaluation settings require a numeric 'scoreRange'")

    criteria_raw = raw.get("scoreCriteria") or {}
    if not isinstance(criteria_raw, dict):
        raise ValidationError("'scoreCriteria' must be an object")
    try:
        criteria = {int(score): str(text) for score, text in criteria_raw.items()}
    except ValueError:
        raise ValidationError("'scoreCriteria' keys must be numeric scores")

    columns = raw.get("selectedColumns") or []
    if not isinstance(columns, list):
        raise ValidationError("'selectedColumns' must be a list")

    return EvaluationSettings(
        model=model,
        evaluation_prompt=prompt,
        score_range=score_range,
        score_criteria=criteria,
        selected_columns=[str(c) for c in columns],
        provider=raw.get("provider") or DEFAULT_PROVIDER,
    )


def request_from_payload(payload: Dict[str, Any], config: Optional[Config] = None) -> OperationRequest:
    """
    Builds an OperationRequest from the JSON body sent to ``/llm``.

    Raises:
        ValidationError: If the action is unknown or a required field is missing.
    """
    action = payload.get("action")
    if not action:
        raise ValidationError("Invalid request data: missing action")
    try:
        kind = OperationType(action)
    except ValueError:
        raise ValidationError("Invalid action")

    if kind == OperationType.INFERENCE:
        model = payload.get("modelName")
        if not model:
            raise ValidationError("Model name is not provided")
        return InferenceRequest(
            model=model,
            provider=payload.get("selectedProvider") or DEFAULT_PROVIDER,
            system_prompt_column=payload.get("systemPrompt") or None,
            user_input_column=payload.get("userInput") or None,
            host_url=payload.get("hostUrl") or None,
            output_column=payload.get("outputColumn") or None,
        )

    if kind == OperationType.EVALUATE:
        return EvaluateRequest(settings=_parse_evaluation_settings(payload.get("evaluationSettings")))

    factor = payload.get("augmentationFactor")
    prompt = payload.get("augmentationPrompt")
    column = payload.get("selectedColumn")
    if not factor or not prompt or not column:
        raise ValidationError("Missing augmentation parameters")
    try:
        factor = int(factor)
    except (TypeError, ValueError):
        raise ValidationError("'augmentationFactor' must be an integer")
    if factor < 1:
        raise ValidationError("'augmentationFactor' must be at least 1")

    default_model = config.get("augment.model", "gpt-4") if config else "gpt-4"
    return AugmentRequest(
        factor=factor,
        prompt=prompt,
        column=column,
        model=payload.get("modelName") or default_model,
        provider=payload.get("selectedProvider") or DEFAULT_PROVIDER,
    )


def request_to_payload(request: OperationRequest) -> Dict[str, Any]:
    """Inverse of request_from_payload: the ``/llm`` body fields for ``request`` (without data)."""
    if isinstance(request, InferenceRequest):
        body = {
            "action": request.kind.value,
            "modelName": request.model,
            "selectedProvider": request.provider,
            "systemPrompt": request.system_prompt_column,
            "userInput": request.user_input_column,
            "hostUrl": request.host_url,
            "outputColumn": request.output_column,
        }
    elif isinstance(request, EvaluateRequest):
        settings = request.settings
        body = {
            "action": request.kind.value,
            "evaluationSettings": {
                "model": settings.model,
                "evaluationPrompt": settings.evaluation_prompt,
                "scoreRange": settings.score_range,
                "scoreCriteria": {str(k): v for k, v in settings.score_criteria.items()},
                "selectedColumns": list(settings.selected_columns),
                "provider": settings.provider,
            },
        }
    else:
        body = {
            "action": request.kind.value,
            "augmentationFactor": request.factor,
            "augmentationPrompt": request.prompt,
            "selectedColumn": request.column,
            "modelName": request.model,
            "selectedProvider": request.provider,
        }
    return {k: v for k, v in body.items() if v is not None}


# --- Outcomes ---

class FailureKind(Enum):
    """What went wrong for a row, a generation or a whole batch."""
    PROVIDER_CALL_FAILED = "provider_call_failed"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSPORT = "transport"
    UNEXPECTED = "unexpected"


@dataclass
class OperationFailure:
    kind: FailureKind
    message: str
    status: Optional[int] = None
    body: Optional[str] = None

    @classmethod
    def from_exception(cls, error: BaseException) -> "OperationFailure":
        if isinstance(error, ProviderCallFailed):
            kind = (FailureKind.MALFORMED_RESPONSE
                    if error.kind == ProviderFailureKind.MALFORMED_RESPONSE
                    else FailureKind.PROVIDER_CALL_FAILED)
            return cls(kind=kind, message=str(error), status=error.status, body=error.body)
        if isinstance(error, BatchTransportError):
            return cls(kind=FailureKind.TRANSPORT, message=str(error), status=error.status, body=error.body)
        if isinstance(error, UnexpectedOperationFailure) and error.__cause__ is not None:
            return cls(kind=FailureKind.UNEXPECTED, message=str(error.__cause__))
        return cls(kind=FailureKind.UNEXPECTED, message=str(error))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "status": self.status}


@dataclass
class RowOutcome:
    """
    Result of processing one input row.

    ``rows`` always holds at least one row: the degraded row for a failed
    inference/evaluation, or the original plus surviving variants for augment.
    ``failures`` lists what went wrong, if anything.
    """
    rows: List[Row]
    failures: List[OperationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class BatchProgress:
    """Rows completed so far out of the total for the current run."""
    completed: int = 0
    total: int = 0

    def reset(self) -> None:
        self.completed = 0
        self.total = 0

    def to_dict(self) -> Dict[str, int]:
        return {"completed": self.completed, "total": self.total}


# --- Session ---

class Session:
    """
    Explicit context for one or more runs.

    Holds the credential store (read-only while a run is in flight), the
    configuration and the progress of the current run. ``transport`` lets
    callers route HTTP through a custom httpx transport (tests, proxies).
    """

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or load_config()
        self.credentials = credentials or CredentialStore(
            keyring_fallback=bool(self.config.get("credentials.keyring_fallback", False))
        )
        self.transport = transport
        self.progress = BatchProgress()

    @property
    def batch_size(self) -> int:
        return int(self.config.get("batch.size", 10))

    @property
    def timeout(self) -> float:
        return float(self.config.get("http.timeout", 60.0))

    @property
    def per_model_column(self) -> bool:
        return bool(self.config.get("inference.per_model_column", True))

    def open_client(self) -> httpx.AsyncClient:
        """Opens the async HTTP client shared by every call of a run."""
        verify = resolve_ssl_verify(
            self.config.get("http.ssl_mode", "certifi"),
            self.config.get("http.ca_bundle") or None,
        )
        return httpx.AsyncClient(timeout=self.timeout, verify=verify, transport=self.transport)

    def __repr__(self) -> str:
        return f"Session(credentials={self.credentials!r}, batch_size={self.batch_size})"
