"""Browser hand-off to Backlog pages."""

from __future__ import annotations

import webbrowser
from collections.abc import Callable
from typing import Any

from .logging import get_logger

TICKET_LIST_URL = "https://{space_key}.{domain}/find/{project_key}"
TICKET_URL = "https://{space_key}.{domain}/view/{ticket_key}"
PROJECT_URL = "https://{space_key}.{domain}/projects/{project_key}"

Opener = Callable[[str], Any]


def ticket_list_url(space_key: str, domain: str, project_key: str) -> str:
    return TICKET_LIST_URL.format(space_key=space_key, domain=domain, project_key=project_key)


def ticket_url(space_key: str, domain: str, ticket_key: str) -> str:
    return TICKET_URL.format(space_key=space_key, domain=domain, ticket_key=ticket_key)


def project_url(space_key: str, domain: str, project_key: str) -> str:
    return PROJECT_URL.format(space_key=space_key, domain=domain, project_key=project_key)


def open_url(url: str, opener: Opener = webbrowser.open) -> str:
    get_logger().log_operation("open_browser", url=url)
    opener(url)
    return url


__all__ = ["open_url", "project_url", "ticket_list_url", "ticket_url"]
