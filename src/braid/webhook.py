"""Webhook normalization independent of any HTTP framework.

``normalize_webhook(raw_body, headers, secret)`` validates a delivery and
returns a ``NormalizedEvent`` or raises ``WebhookError`` carrying the HTTP
status the caller should answer with. Checks run in this order:

1. missing ``X-GitHub-Event`` or ``X-GitHub-Delivery`` -> 400
2. bad or missing ``X-Hub-Signature-256`` -> 401
3. body is not a JSON object -> 400

An ``issue`` object that cannot be read (say a non-integer ``number``)
raises ``WebhookError(400)`` from ``NormalizedEvent.issue``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from braid.errors import WebhookError
from braid.remote import RemoteIssue
from braid.signature import verify_signature

logger = logging.getLogger(__name__)

EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"
SIGNATURE_HEADER = "x-hub-signature-256"


@dataclass
class NormalizedEvent:
    event: str
    delivery_id: str
    action: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def issue(self) -> RemoteIssue | None:
        data = self.payload.get("issue")
        if not isinstance(data, dict) or "number" not in data:
            return None
        try:
            return RemoteIssue.from_api(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise WebhookError(400, "Malformed issue payload") from exc

    @property
    def repository(self) -> str | None:
        repo = self.payload.get("repository")
        if isinstance(repo, dict):
            return repo.get("full_name")
        return None


def normalize_webhook(raw_body: bytes, headers: Mapping[str, str], secret: str) -> NormalizedEvent:
    lowered = {k.lower(): v for k, v in headers.items()}
    event = lowered.get(EVENT_HEADER, "").strip()
    delivery_id = lowered.get(DELIVERY_HEADER, "").strip()
    if not event:
        raise WebhookError(400, "Missing x-github-event header")
    if not delivery_id:
        raise WebhookError(400, "Missing x-github-delivery header")

    if not verify_signature(raw_body, lowered.get(SIGNATURE_HEADER), secret):
        logger.warning("Rejected webhook with invalid signature", extra={"delivery_id": delivery_id})
        raise WebhookError(401, "Invalid signature")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookError(400, "Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise WebhookError(400, "Invalid JSON payload")

    return NormalizedEvent(
        event=event,
        delivery_id=delivery_id,
        action=str(payload.get("action") or ""),
        payload=payload,
    )
