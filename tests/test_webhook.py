"""Tests for webhook validation and normalization."""

from __future__ import annotations

import json

import pytest

from braid.errors import WebhookError
from braid.signature import compute_signature
from braid.webhook import normalize_webhook

SECRET = "s3cret"


def _headers(body: bytes, *, event: str = "issues", delivery: str = "d-1", secret: str = SECRET) -> dict[str, str]:
    return {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": compute_signature(body, secret),
    }


def _body(**payload: object) -> bytes:
    return json.dumps(payload).encode()


class TestNormalize:
    def test_issue_event(self) -> None:
        body = _body(
            action="labeled",
            issue={"number": 42, "title": "T", "state": "open", "labels": [{"name": "bug"}]},
            repository={"full_name": "acme/widgets"},
        )
        event = normalize_webhook(body, _headers(body), SECRET)
        assert (event.event, event.action, event.delivery_id) == ("issues", "labeled", "d-1")
        assert event.issue is not None
        assert event.issue.number == 42
        assert event.issue.labels == ["bug"]
        assert event.repository == "acme/widgets"

    def test_headers_case_insensitive(self) -> None:
        body = _body(zen="Keep it logically awesome.")
        headers = {k.lower(): v for k, v in _headers(body, event="ping").items()}
        event = normalize_webhook(body, headers, SECRET)
        assert event.event == "ping"
        assert event.action == ""
        assert event.issue is None

    def test_issue_without_number(self) -> None:
        body = _body(action="opened", issue={"title": "no number"})
        assert normalize_webhook(body, _headers(body), SECRET).issue is None

    @pytest.mark.parametrize(
        "issue",
        [{"number": "abc", "title": "T"}, {"number": None}, {"number": 3, "assignees": ["alice"]}, {"number": 3, "assignee": "alice"}],
    )
    def test_malformed_issue_is_a_bad_request(self, issue: dict[str, object]) -> None:
        body = _body(action="edited", issue=issue)
        event = normalize_webhook(body, _headers(body), SECRET)
        with pytest.raises(WebhookError) as exc_info:
            _ = event.issue
        assert exc_info.value.status_code == 400


class TestRejections:
    @pytest.mark.parametrize("missing", ["X-GitHub-Event", "X-GitHub-Delivery"])
    def test_missing_header(self, missing: str) -> None:
        body = _body(action="opened")
        headers = _headers(body)
        del headers[missing]
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, headers, SECRET)
        assert exc_info.value.status_code == 400

    def test_header_check_runs_before_signature(self) -> None:
        body = _body(action="opened")
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, {"X-Hub-Signature-256": "sha256=00"}, SECRET)
        assert exc_info.value.status_code == 400

    def test_bad_signature(self) -> None:
        body = _body(action="opened")
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, _headers(body, secret="wrong"), SECRET)
        assert exc_info.value.status_code == 401

    def test_missing_signature(self) -> None:
        body = _body(action="opened")
        headers = _headers(body)
        del headers["X-Hub-Signature-256"]
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, headers, SECRET)
        assert exc_info.value.status_code == 401

    def test_installation_without_secret_rejects(self) -> None:
        body = _body(action="opened")
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, _headers(body, secret=""), "")
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b"\xff\xfe"])
    def test_invalid_json(self, body: bytes) -> None:
        with pytest.raises(WebhookError) as exc_info:
            normalize_webhook(body, _headers(body), SECRET)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid JSON payload"
