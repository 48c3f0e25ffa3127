"""
SheetLLM HTTP boundary

A Flask app exposing the sheet operations to the browser editor.

ENDPOINTS:
    POST /llm      - Run one batch (the rows in the body) and return {result}
    POST /llm/run  - Run a whole data set in chunks and return {result, schema, errors, batches}
    GET  /health   - Liveness probe

BODY (both POST endpoints):
    {
        "action": "inference" | "evaluate" | "augment",
        "data": [{...row...}, ...],
        "credentials": {"providers": [{"name", "bearerToken", "clientId", "clientSecret"}]},
        "modelName", "selectedProvider", "hostUrl", "systemPrompt", "userInput",
        "augmentationFactor", "augmentationPrompt", "selectedColumn",
        "evaluationSettings": {...}
    }

``apiKeys`` is accepted as an alias of ``credentials``.
"""

import logging
import traceback
from typing import Any, Dict, List, Optional, Tuple

import httpx
from flask import Flask, jsonify, request
from flask_cors import CORS

from . import __version__
from .config import Config, load_config
from .connector.connector_genai import CredentialStore, ValidationError
from .tasker.genai_tasker import OperationType, Row, Session, request_from_payload
from .tasker.data_stage import DataSet, TableSchema, create_operation, run_operation
from .tasker.data_stage.schema import IS_AUGMENTED_COLUMN

logger = logging.getLogger("SheetLLM.Server")


def _parse_rows(payload: Dict[str, Any]) -> List[Row]:
    data = payload.get("data")
    if not isinstance(data, list) or not data:
        raise ValidationError("Invalid request data: 'data' must be a non-empty list of rows")
    if not all(isinstance(row, dict) for row in data):
        raise ValidationError("Invalid request data: every row must be an object")
    return data


def _build_session(payload: Dict[str, Any], config: Config,
                   transport: Optional[httpx.AsyncBaseTransport]) -> Session:
    credentials = CredentialStore.from_payload(
        payload.get("credentials") or payload.get("apiKeys"),
        keyring_fallback=bool(config.get("credentials.keyring_fallback", False)),
    )
    return Session(credentials=credentials, config=config, transport=transport)


def create_app(config: Optional[Config] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> Flask:
    """
    Application factory.

    Args:
        config: SheetLLM configuration (loaded from the environment when None).
        transport: Optional httpx transport used for every provider call.
    """
    config = config or load_config()
    expose_stack = bool(config.get("server.expose_stack", False))

    app = Flask(__name__)
    # Rows keep their column order in both directions
    app.json.sort_keys = False
    CORS(app)  # Enable CORS for browser requests

    def error_response(error: Exception) -> Tuple[Any, int]:
        if isinstance(error, ValidationError):
            logger.warning(f"Rejected request: {error}")
            return jsonify({"error": str(error)}), 400
        logger.error(f"Error in /llm route: {error}", exc_info=True)
        body = {"error": str(error) or type(error).__name__}
        if expose_stack:
            body["stack"] = traceback.format_exc()
        return jsonify(body), 500

    def read_payload() -> Dict[str, Any]:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("Invalid request data: body must be a JSON object")
        return payload

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "version": __version__})

    @app.route("/llm", methods=["POST"])
    async def llm():
        """Processes one batch: every row of the body, concurrently."""
        try:
            payload = read_payload()
            operation_request = request_from_payload(payload, config)
            rows = _parse_rows(payload)
            session = _build_session(payload, config, transport)
            logger.info(f"/llm {operation_request.kind.value}: {len(rows)} rows")

            async with session.open_client() as client:
                operation = create_operation(operation_request, config).bind(session, client)
                outcomes = await operation.run_batch(rows)

            result = [row for outcome in outcomes for row in outcome.rows]
            if operation_request.kind == OperationType.AUGMENT:
                for row in result:
                    row.setdefault(IS_AUGMENTED_COLUMN, "No")
            return jsonify({"result": result})
        except Exception as e:
            return error_response(e)

    @app.route("/llm/run", methods=["POST"])
    async def llm_run():
        """Runs the whole data set in chunks and returns the reconciled schema too."""
        try:
            payload = read_payload()
            operation_request = request_from_payload(payload, config)
            rows = _parse_rows(payload)
            session = _build_session(payload, config, transport)

            schema = payload.get("schema")
            if isinstance(schema, dict):
                dataset = DataSet(rows=[dict(row) for row in rows], schema=TableSchema.from_dict(schema))
            else:
                dataset = DataSet.from_rows(rows, headers=payload.get("headers"))

            result = await run_operation(operation_request, dataset, session)
            return jsonify(result.to_dict())
        except Exception as e:
            return error_response(e)

    return app


def serve(config: Optional[Config] = None, host: Optional[str] = None, port: Optional[int] = None,
          debug: bool = False) -> None:
    """Runs the development server."""
    config = config or load_config()
    app = create_app(config)
    host = host or config.get("server.host", "127.0.0.1")
    port = port or config.get("server.port", 5000, type=int)
    logger.info(f"SheetLLM server v{__version__} listening on http://{host}:{port}")
    app.run(host=host, port=port, debug=debug)
