"""
Request handlers for the portfolio site's backend endpoints.

Handlers take already-received request data and return ``(status_code,
payload)`` tuples, so they can sit behind any HTTP server or function
runtime. Payloads only ever carry curated messages.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from portfolio_core.aggregator import run_aggregation
from portfolio_core.config import Config
from portfolio_core.emailer import NotificationDispatcher
from portfolio_core.models import NotificationRequest, NotificationStatus

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

_FAILURE_STATUS = {
    "invalid_handle": 400,
    "invalid_limit": 400,
    "rate_limited": 429,
}


def _decode_body(body: Union[str, bytes, dict, None]) -> Optional[dict]:
    if isinstance(body, dict):
        return body
    if not body:
        return None
    try:
        decoded = json.loads(body)
    except (ValueError, TypeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def handle_contact_request(
    method: str,
    body: Union[str, bytes, dict, None],
    config: Optional[Config] = None,
    dispatcher: Optional[NotificationDispatcher] = None
) -> Response:
    """
    Handle a contact form POST with a JSON body ``{name, email, subject, message}``.

    Returns:
        (200, {"message"}) when sent, (400, {"error"}) for missing fields,
        (405, {"message"}) for other methods, (500, {"error"}) otherwise
    """
    if method.upper() != "POST":
        return 405, {"message": "Method not allowed"}

    payload = _decode_body(body)
    if payload is None:
        logger.warning("Contact request with missing or malformed JSON body")
        return 400, {"error": "All fields are required"}

    request = NotificationRequest.from_payload(payload)
    dispatcher = dispatcher or NotificationDispatcher(config)
    outcome = dispatcher.dispatch(request)

    if outcome.status == NotificationStatus.SENT:
        return 200, {"message": outcome.message}
    if outcome.status == NotificationStatus.VALIDATION_ERROR:
        return 400, {"error": outcome.message}
    return 500, {"error": outcome.message, "retryable": outcome.retryable}


def handle_projects_request(
    handle: Optional[str] = None,
    limit: Optional[int] = None,
    config: Optional[Config] = None,
    transport=None
) -> Response:
    """Build the project list; 200 on success, 400 for a bad handle or limit, 429 when rate limited, 503 otherwise"""
    result = run_aggregation(config, handle=handle, limit=limit, transport=transport)

    if not result.ok:
        status = _FAILURE_STATUS.get(result.reason, 503)
        return status, {"error": result.error, "reason": result.reason}

    return 200, {
        "status": result.status.value,
        "projects": [project.model_dump(mode="json") for project in result.projects],
    }
