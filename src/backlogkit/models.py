"""In-memory representations of Backlog entities and API responses.

Reference entities are built from the JSON payloads returned by the Backlog
v2 API (``from_api``). Tickets additionally know how to render themselves as
the form-encoded body the ticket endpoints expect (``to_form``); any field a
caller sets in ``extra`` is passed through to the remote service unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class BacklogError:
    message: str
    code: int | None = None
    more_info: str | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> BacklogError:
        code = data.get("code")
        more_info = data.get("moreInfo")
        return cls(
            message=str(data.get("message", "")),
            code=code if isinstance(code, int) else None,
            more_info=str(more_info) if more_info else None,
        )


@dataclass(frozen=True)
class BacklogResponse(Generic[T]):
    """Outcome of a single API call.

    ``content`` is present exactly when ``is_success`` is true; failed
    responses carry their ordered ``errors`` instead.
    """

    is_success: bool
    content: T | None = None
    errors: tuple[BacklogError, ...] = ()
    status_code: int | None = None

    def __post_init__(self) -> None:
        if self.is_success and self.content is None:
            raise ValueError("successful response requires content")
        if not self.is_success and self.content is not None:
            raise ValueError("failed response must not carry content")

    @classmethod
    def success(cls, content: T, status_code: int | None = 200) -> BacklogResponse[T]:
        return cls(True, content=content, status_code=status_code)

    @classmethod
    def failure(
        cls, errors: Iterable[BacklogError | str], status_code: int | None = None
    ) -> BacklogResponse[T]:
        normalized = tuple(
            err if isinstance(err, BacklogError) else BacklogError(str(err)) for err in errors
        )
        return cls(False, errors=normalized, status_code=status_code)

    @property
    def messages(self) -> list[str]:
        return [err.message for err in self.errors]

    def unwrap(self) -> T:
        """Return content or raise the matching :mod:`backlogkit.errors` exception."""
        if self.is_success and self.content is not None:
            return self.content
        from .errors import response_error

        raise response_error(self)


def _opt_int(value: Any) -> int | None:
    return value if isinstance(value, int) else None


@dataclass(frozen=True)
class Space:
    key: str
    name: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Space:
        return cls(key=str(data["spaceKey"]), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class Project:
    id: int
    key: str
    name: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Project:
        return cls(id=int(data["id"]), key=str(data["projectKey"]), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class TicketType:
    id: int
    name: str
    project_id: int | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> TicketType:
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            project_id=_opt_int(data.get("projectId")),
        )


@dataclass(frozen=True)
class Priority:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Priority:
        return cls(id=int(data["id"]), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class Category:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Category:
        return cls(id=int(data["id"]), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class Milestone:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Milestone:
        return cls(id=int(data["id"]), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class User:
    id: int
    name: str
    user_id: str | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> User:
        user_id = data.get("userId")
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            user_id=str(user_id) if user_id else None,
        )


@dataclass(frozen=True)
class Attachment:
    id: int
    name: str
    size: int | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Attachment:
        return cls(id=int(data["id"]), name=str(data.get("name") or ""), size=_opt_int(data.get("size")))


@dataclass
class Ticket:
    """A Backlog issue. ``key`` and ``id`` are assigned by the server."""

    summary: str
    ticket_type: TicketType | None = None
    priority: Priority | None = None
    description: str = ""
    categories: list[Category] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    assignee: User | None = None
    attachment_ids: list[int] = field(default_factory=list)
    project_id: int | None = None
    id: int | None = None
    key: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str | None:
        """Identifier usable in ``/issues/{ref}`` paths."""
        if self.key:
            return self.key
        if self.id is not None:
            return str(self.id)
        return None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Ticket:
        issue_type = data.get("issueType")
        priority = data.get("priority")
        assignee = data.get("assignee")
        return cls(
            summary=str(data.get("summary") or ""),
            ticket_type=TicketType.from_api(issue_type) if isinstance(issue_type, Mapping) else None,
            priority=Priority.from_api(priority) if isinstance(priority, Mapping) else None,
            description=str(data.get("description") or ""),
            categories=[Category.from_api(c) for c in data.get("category") or []],
            milestones=[Milestone.from_api(m) for m in data.get("milestone") or []],
            assignee=User.from_api(assignee) if isinstance(assignee, Mapping) else None,
            project_id=_opt_int(data.get("projectId")),
            id=_opt_int(data.get("id")),
            key=data.get("issueKey"),
        )

    def to_form(self, *, project_id: int | None = None) -> list[tuple[str, str]]:
        """Render the ticket as Backlog's form-encoded issue payload.

        ``project_id`` is only sent for creation; updates address the ticket
        through its key instead.
        """
        form: list[tuple[str, str]] = []
        if project_id is not None:
            form.append(("projectId", str(project_id)))
        form.append(("summary", self.summary))
        if self.ticket_type is not None:
            form.append(("issueTypeId", str(self.ticket_type.id)))
        if self.priority is not None:
            form.append(("priorityId", str(self.priority.id)))
        if self.description:
            form.append(("description", self.description))
        form.extend(("categoryId[]", str(c.id)) for c in self.categories)
        form.extend(("milestoneId[]", str(m.id)) for m in self.milestones)
        if self.assignee is not None:
            form.append(("assigneeId", str(self.assignee.id)))
        form.extend(("attachmentId[]", str(a)) for a in self.attachment_ids)
        for name, value in self.extra.items():
            if isinstance(value, (list, tuple)):
                form.extend((name, str(v)) for v in value)
            else:
                form.append((name, str(value)))
        return form


@dataclass(frozen=True)
class ProjectData:
    """Snapshot of a project's reference collections."""

    ticket_types: tuple[TicketType, ...] = ()
    priorities: tuple[Priority, ...] = ()
    categories: tuple[Category, ...] = ()
    milestones: tuple[Milestone, ...] = ()
    users: tuple[User, ...] = ()

    def find_ticket_type(self, name: str) -> TicketType | None:
        return _find_named(self.ticket_types, name)

    def find_priority(self, name: str) -> Priority | None:
        return _find_named(self.priorities, name)

    def find_category(self, name: str) -> Category | None:
        return _find_named(self.categories, name)

    def find_milestone(self, name: str) -> Milestone | None:
        return _find_named(self.milestones, name)

    def find_user(self, name: str) -> User | None:
        needle = name.strip().lower()
        for user in self.users:
            if user.name.lower() == needle or (user.user_id or "").lower() == needle:
                return user
        return None


def _find_named(entries: Iterable[Any], name: str) -> Any | None:
    needle = name.strip().lower()
    for entry in entries:
        if entry.name.lower() == needle:
            return entry
    return None


__all__ = [
    "Attachment",
    "BacklogError",
    "BacklogResponse",
    "Category",
    "Milestone",
    "Priority",
    "Project",
    "ProjectData",
    "Space",
    "Ticket",
    "TicketType",
    "User",
]
