"""Ticket operations against a Backlog project.

``TicketClient`` is stateless: ``authenticate`` produces a :class:`Session`
value and every other operation takes that session explicitly. Reads and
writes are best-effort. A failed remote call is logged and the operation
returns ``None``; only authentication failures raise.

Mutations (add/update ticket, attachment upload) go through
:func:`backlogkit.retry.run_with_retry`, which repeats the identical request
once when Backlog reports a ``Deadlock`` conflict. Reference-data reads are
not retried unless ``behavior.retry_reference_reads`` is enabled.
"""

from __future__ import annotations

import webbrowser
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol, TypeVar

from .backlog_rest import BacklogRestClient
from .browser import Opener, open_url, project_url, ticket_list_url, ticket_url
from .config import BacklogConfig
from .errors import classify_response
from .logging import StructuredLogger, get_logger
from .models import Attachment, BacklogResponse, Project, ProjectData, Space, Ticket
from .oauth import OAuth2Credentials, OAuth2TokenManager, create_token_manager
from .retry import check_is_retry, run_with_retry

T = TypeVar("T")

TokenManagerFactory = Callable[[BacklogConfig], OAuth2TokenManager]
RestClientFactory = Callable[[BacklogConfig, OAuth2Credentials], BacklogRestClient]


class AuthLifecycle(Protocol):
    """Host hooks run around the blocking authentication call."""

    def before_authenticate(self) -> None: ...

    def after_authenticate(self) -> None: ...


def _default_rest_client(cfg: BacklogConfig, creds: OAuth2Credentials) -> BacklogRestClient:
    return BacklogRestClient(base_url=cfg.base_url, access_token=creds.access_token)


@dataclass(frozen=True)
class Session:
    config: BacklogConfig
    rest: BacklogRestClient
    space: Space | None = None
    project: Project | None = None
    data: ProjectData = field(default_factory=ProjectData)

    @property
    def space_key(self) -> str:
        return self.space.key if self.space else self.config.space_key

    @property
    def project_key(self) -> str:
        return self.project.key if self.project else self.config.project_key


class TicketClient:
    def __init__(
        self,
        *,
        token_manager_factory: TokenManagerFactory | None = None,
        rest_client_factory: RestClientFactory | None = None,
        lifecycle: AuthLifecycle | None = None,
        logger: StructuredLogger | None = None,
        opener: Opener = webbrowser.open,
    ):
        self._token_manager_factory = token_manager_factory or create_token_manager
        self._rest_client_factory = rest_client_factory or _default_rest_client
        self._lifecycle = lifecycle
        self.logger = logger or get_logger()
        self._opener = opener

    # ---- session -------------------------------------------------------
    def authenticate(self, config: BacklogConfig) -> Session:
        """Run the OAuth2 flow and return a session without reference data.

        Raises AuthenticationError on failure.
        """
        if self._lifecycle is not None:
            self._lifecycle.before_authenticate()
        try:
            with self.logger.timed_operation("authenticate", space_key=config.space_key):
                creds = self._token_manager_factory(config).authorize()
        finally:
            if self._lifecycle is not None:
                self._lifecycle.after_authenticate()
        return Session(config=config, rest=self._rest_client_factory(config, creds))

    def load_project_info(self, session: Session) -> Session:
        cfg = session.config
        rest = session.rest
        key = cfg.project_key
        retry = cfg.retry_reference_reads

        space = self._read(rest.get_space, "get_space", retry)
        project = self._read(lambda: rest.get_project(key), "get_project", retry)
        data = ProjectData(
            ticket_types=self._read(lambda: rest.get_ticket_types(key), "get_ticket_types", retry) or (),
            priorities=self._read(rest.get_priority_types, "get_priority_types", retry) or (),
            categories=self._read(lambda: rest.get_categories(key), "get_categories", retry) or (),
            milestones=self._read(lambda: rest.get_milestones(key), "get_milestones", retry) or (),
            users=self._read(lambda: rest.get_users(key), "get_users", retry) or (),
        )
        self.logger.log_operation(
            "project_info_loaded",
            project_key=key,
            ticket_types=len(data.ticket_types),
            users=len(data.users),
        )
        return replace(session, space=space, project=project, data=data)

    def connect(self, config: BacklogConfig) -> Session:
        """Authenticate, then load the project's reference data."""
        return self.load_project_info(self.authenticate(config))

    def _read(
        self, send: Callable[[], BacklogResponse[T]], operation: str, retry: bool
    ) -> T | None:
        response = run_with_retry(send, operation=operation, logger=self.logger) if retry else send()
        return self.resolve_result(response, operation=operation)

    # ---- tickets -------------------------------------------------------
    def get_ticket_by_key(self, session: Session, key: str) -> Ticket | None:
        return self.resolve_result(session.rest.get_ticket(key), operation="get_ticket")

    def add_ticket(self, session: Session, ticket: Ticket) -> Ticket | None:
        project_id = session.project.id if session.project else None
        response = run_with_retry(
            lambda: session.rest.add_ticket(ticket, project_id),
            operation="add_ticket",
            logger=self.logger,
        )
        created = self.resolve_result(response, operation="add_ticket")
        if created is not None:
            self.logger.log_ticket_action("created", created.key, summary=created.summary)
        return created

    def update_ticket(self, session: Session, ticket: Ticket) -> Ticket | None:
        response = run_with_retry(
            lambda: session.rest.update_ticket(ticket),
            operation="update_ticket",
            logger=self.logger,
        )
        updated = self.resolve_result(response, operation="update_ticket")
        if updated is not None:
            self.logger.log_ticket_action("updated", updated.key, summary=updated.summary)
        return updated

    def add_attachment(self, session: Session, file_path: str | Path) -> Attachment | None:
        """Upload a local file to the space. A missing file raises OSError."""
        path = Path(file_path)
        content = path.read_bytes()
        response = run_with_retry(
            lambda: session.rest.add_attachment(path.name, content),
            operation="add_attachment",
            logger=self.logger,
        )
        attachment = self.resolve_result(response, operation="add_attachment")
        if attachment is not None:
            self.logger.log_operation("attachment_uploaded", attachment_id=attachment.id, size=attachment.size)
        return attachment

    # ---- result handling ----------------------------------------------
    check_is_retry = staticmethod(check_is_retry)

    def resolve_result(self, response: BacklogResponse[T], *, operation: str = "request") -> T | None:
        if response.is_success:
            return response.content
        info = classify_response(response)
        self.logger.log_error(
            f"Backlog {operation} failed",
            error=info.message,
            category=info.category,
            status=response.status_code,
        )
        return None

    # ---- browser -------------------------------------------------------
    def ticket_list_url(self, session: Session) -> str:
        return ticket_list_url(session.space_key, session.config.domain, session.project_key)

    def ticket_url(self, session: Session, ticket: Ticket | str) -> str:
        key = ticket if isinstance(ticket, str) else ticket.ref
        if not key:
            raise ValueError("ticket has no key")
        return ticket_url(session.space_key, session.config.domain, key)

    def project_url(self, session: Session) -> str:
        return project_url(session.space_key, session.config.domain, session.project_key)

    def open_backlog(self, session: Session) -> str:
        return open_url(self.ticket_list_url(session), self._opener)

    def open_backlog_ticket(self, session: Session, ticket: Ticket | str) -> str:
        return open_url(self.ticket_url(session, ticket), self._opener)

    def open_project(self, session: Session) -> str:
        return open_url(self.project_url(session), self._opener)


__all__ = ["AuthLifecycle", "Session", "TicketClient"]
