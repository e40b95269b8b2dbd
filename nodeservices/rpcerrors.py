"""JSON-RPC error responses."""

from __future__ import annotations

import json
import logging
from http import HTTPStatus

log = logging.getLogger(__name__)

RATE_LIMIT_ERROR_CODE = -32000
RATE_LIMIT_ERROR_MESSAGE = "agent exceeds scan node request limit"


def too_many_requests_response(body: bytes | str) -> tuple[int, bytes]:
    """Build the HTTP status and body answering a rate-limited JSON-RPC request.

    The body is empty when the request's ID cannot be decoded.
    """
    status = int(HTTPStatus.TOO_MANY_REQUESTS)
    try:
        payload = json.loads(body)
        request_id = payload.get("id", 0) if isinstance(payload, dict) else None
        if request_id is None and isinstance(payload, dict):
            request_id = 0
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            raise ValueError(f"invalid request id: {request_id!r}")
    except ValueError as exc:
        log.error("failed to decode jsonrpc request body: %s", exc)
        return status, b""
    response = {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": RATE_LIMIT_ERROR_CODE, "message": RATE_LIMIT_ERROR_MESSAGE},
    }
    return status, (json.dumps(response, separators=(",", ":")) + "\n").encode()