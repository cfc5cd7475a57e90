"""Remote issue tracker access.

The engine depends only on the ``RemoteTracker`` protocol. ``GitHubClient``
implements it over the GitHub REST API with ``httpx.AsyncClient``; tests
inject an in-memory tracker instead.

HTTP failures are classified so the retry layer knows what to repeat:
timeouts, connection errors, 5xx, 429 and a 403 with an exhausted rate
limit raise ``TransientRemoteError``; any other error status raises
``RemoteAPIError``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from braid import __version__
from braid.errors import RemoteAPIError, TransientRemoteError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT = 10.0
PER_PAGE = 100

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')


@dataclass
class RemoteIssue:
    number: int
    title: str
    body: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    html_url: str = ""
    created_at: str = ""
    updated_at: str = ""
    closed_at: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteIssue:
        """Build from a GitHub issue object (REST response or webhook ``issue`` field)."""
        labels = [label["name"] if isinstance(label, dict) else str(label) for label in data.get("labels") or []]
        assignees = [a["login"] for a in data.get("assignees") or [] if a and a.get("login")]
        if not assignees and data.get("assignee"):
            assignees = [data["assignee"]["login"]]
        return cls(
            number=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state") or "open",
            labels=labels,
            assignees=assignees,
            html_url=data.get("html_url") or "",
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            closed_at=data.get("closed_at"),
        )


@dataclass
class RemotePayload:
    """Fields written to the remote side on create or update."""

    title: str
    body: str
    state: str
    labels: list[str]
    assignees: list[str]

    def to_api(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "state": self.state,
            "labels": self.labels,
            "assignees": self.assignees,
        }

    def differs_from(self, remote: RemoteIssue) -> bool:
        return (
            self.title != remote.title
            or self.body.strip() != remote.body.strip()
            or self.state != remote.state
            or set(self.labels) != set(remote.labels)
            or set(self.assignees) != set(remote.assignees)
        )


class RemoteTracker(Protocol):
    async def create_issue(self, owner: str, repo: str, payload: RemotePayload) -> RemoteIssue: ...

    async def update_issue(self, owner: str, repo: str, number: int, payload: RemotePayload) -> RemoteIssue: ...

    async def get_issue(self, owner: str, repo: str, number: int) -> RemoteIssue: ...

    async def list_issues(self, owner: str, repo: str, *, state: str = "all") -> list[RemoteIssue]: ...

    async def add_labels(self, owner: str, repo: str, number: int, labels: list[str]) -> None: ...

    async def remove_label(self, owner: str, repo: str, number: int, label: str) -> None: ...


def _classify(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    try:
        detail = response.json().get("message", "")
    except (ValueError, AttributeError):
        detail = response.text[:200]
    msg = f"{what} failed with HTTP {status}: {detail}"
    rate_limited = status == 403 and response.headers.get("x-ratelimit-remaining") == "0"
    if status >= 500 or status == 429 or rate_limited:
        raise TransientRemoteError(msg, status_code=status)
    raise RemoteAPIError(msg, status_code=status)


class GitHubClient:
    """Minimal async GitHub Issues client. Use as an async context manager or call ``aclose()``."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"braid/{__version__}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{what} timed out"
            raise TransientRemoteError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"{what} failed: {exc}"
            raise TransientRemoteError(msg) from exc
        _classify(response, what)
        return response

    async def create_issue(self, owner: str, repo: str, payload: RemotePayload) -> RemoteIssue:
        data = payload.to_api()
        state = data.pop("state")
        response = await self._request("POST", f"/repos/{owner}/{repo}/issues", "create issue", json=data)
        created = RemoteIssue.from_api(response.json())
        # The create endpoint ignores ``state``.
        if state == "closed":
            return await self.update_issue(owner, repo, created.number, payload)
        return created

    async def update_issue(self, owner: str, repo: str, number: int, payload: RemotePayload) -> RemoteIssue:
        response = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/issues/{number}", f"update issue #{number}", json=payload.to_api()
        )
        return RemoteIssue.from_api(response.json())

    async def get_issue(self, owner: str, repo: str, number: int) -> RemoteIssue:
        response = await self._request("GET", f"/repos/{owner}/{repo}/issues/{number}", f"get issue #{number}")
        return RemoteIssue.from_api(response.json())

    async def list_issues(self, owner: str, repo: str, *, state: str = "all") -> list[RemoteIssue]:
        """All issues in *state*, following ``Link`` pagination. Pull requests are skipped."""
        if state not in ("open", "closed", "all"):
            msg = f"Invalid state filter '{state}'"
            raise ValueError(msg)
        issues: list[RemoteIssue] = []
        url: str | None = f"/repos/{owner}/{repo}/issues"
        params: dict[str, Any] | None = {"state": state, "per_page": PER_PAGE}
        while url:
            response = await self._request("GET", url, "list issues", params=params)
            for item in response.json():
                if "pull_request" in item:
                    continue
                issues.append(RemoteIssue.from_api(item))
            match = _NEXT_LINK_RE.search(response.headers.get("link", ""))
            url = match.group(1) if match else None
            params = None  # the next link carries its own query string
        logger.debug("Listed %d issues from %s/%s", len(issues), owner, repo)
        return issues

    async def add_labels(self, owner: str, repo: str, number: int, labels: list[str]) -> None:
        await self._request(
            "POST", f"/repos/{owner}/{repo}/issues/{number}/labels", f"add labels to #{number}", json={"labels": labels}
        )

    async def remove_label(self, owner: str, repo: str, number: int, label: str) -> None:
        await self._request(
            "DELETE",
            f"/repos/{owner}/{repo}/issues/{number}/labels/{quote(label, safe='')}",
            f"remove label from #{number}",
        )
