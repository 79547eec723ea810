from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import requests

from .models import (
    Attachment,
    BacklogError,
    BacklogResponse,
    Category,
    Milestone,
    Priority,
    Project,
    Space,
    Ticket,
    TicketType,
    User,
)

T = TypeVar("T")

API_PREFIX = "/api/v2"
USER_AGENT = "backlogkit-rest/0.1.0"
HTTP_ERROR_STATUS = 400
DEFAULT_TIMEOUT = 30.0


def _list_of(parse: Callable[[Any], T]) -> Callable[[Any], tuple[T, ...]]:
    def _parse(data: Any) -> tuple[T, ...]:
        if not isinstance(data, list):
            raise TypeError(f"expected a list, got {type(data).__name__}")
        return tuple(parse(entry) for entry in data)

    return _parse


def _errors_from_body(response: requests.Response) -> list[BacklogError]:
    try:
        body = response.json()
    except ValueError:
        return []
    raw = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(raw, list):
        return []
    return [BacklogError.from_api(e) for e in raw if isinstance(e, dict)]


@dataclass
class BacklogRestClient:
    """Bearer-token client for the Backlog v2 REST API.

    Every call returns a :class:`BacklogResponse`; remote and transport
    failures become unsuccessful responses instead of exceptions.
    """

    base_url: str
    access_token: str
    timeout: float = DEFAULT_TIMEOUT
    session: requests.Session | None = None
    _session: requests.Session = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._session = self.session or requests.Session()
        self._session.headers.setdefault("Authorization", f"Bearer {self.access_token}")
        self._session.headers.setdefault("Accept", "application/json")
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    # ---- request plumbing ---------------------------------------------
    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{API_PREFIX}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        parse: Callable[[Any], T],
        *,
        params: dict[str, Any] | None = None,
        data: Sequence[tuple[str, str]] | None = None,
        files: dict[str, tuple[str, bytes]] | None = None,
    ) -> BacklogResponse[T]:
        url = self._url(path)
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                data=data,
                files=files,
                headers=self._session.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            return BacklogResponse.failure([f"{method} {url} failed: {exc}"])

        status = response.status_code
        if status >= HTTP_ERROR_STATUS:
            errors = _errors_from_body(response) or [
                BacklogError(f"Backlog API {method} {url} failed with {status}")
            ]
            return BacklogResponse.failure(errors, status_code=status)
        try:
            content = parse(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            return BacklogResponse.failure(
                [f"Malformed response from {method} {url}: {exc}"], status_code=status
            )
        return BacklogResponse.success(content, status_code=status)

    # ---- space / project ----------------------------------------------
    def get_space(self) -> BacklogResponse[Space]:
        return self._request("GET", "/space", Space.from_api)

    def get_project(self, project_key: str) -> BacklogResponse[Project]:
        return self._request("GET", f"/projects/{project_key}", Project.from_api)

    def get_ticket_types(self, project_key: str) -> BacklogResponse[tuple[TicketType, ...]]:
        return self._request("GET", f"/projects/{project_key}/issueTypes", _list_of(TicketType.from_api))

    def get_priority_types(self) -> BacklogResponse[tuple[Priority, ...]]:
        return self._request("GET", "/priorities", _list_of(Priority.from_api))

    def get_categories(self, project_key: str) -> BacklogResponse[tuple[Category, ...]]:
        return self._request("GET", f"/projects/{project_key}/categories", _list_of(Category.from_api))

    def get_milestones(self, project_key: str) -> BacklogResponse[tuple[Milestone, ...]]:
        return self._request("GET", f"/projects/{project_key}/versions", _list_of(Milestone.from_api))

    def get_users(self, project_key: str) -> BacklogResponse[tuple[User, ...]]:
        return self._request("GET", f"/projects/{project_key}/users", _list_of(User.from_api))

    # ---- tickets --------------------------------------------------------
    def get_ticket(self, key: str) -> BacklogResponse[Ticket]:
        return self._request("GET", f"/issues/{key}", Ticket.from_api)

    def add_ticket(self, ticket: Ticket, project_id: int | None = None) -> BacklogResponse[Ticket]:
        form = ticket.to_form(project_id=ticket.project_id or project_id)
        return self._request("POST", "/issues", Ticket.from_api, data=form)

    def update_ticket(self, ticket: Ticket) -> BacklogResponse[Ticket]:
        ref = ticket.ref
        if ref is None:
            return BacklogResponse.failure(["Ticket has no key or id to update"])
        return self._request("PATCH", f"/issues/{ref}", Ticket.from_api, data=ticket.to_form())

    # ---- attachments ----------------------------------------------------
    def add_attachment(self, filename: str, content: bytes) -> BacklogResponse[Attachment]:
        return self._request(
            "POST",
            "/space/attachment",
            Attachment.from_api,
            files={"file": (filename, content)},
        )


__all__ = ["BacklogRestClient", "API_PREFIX", "USER_AGENT"]
