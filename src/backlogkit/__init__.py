"""backlogkit - Backlog ticket integration library.

High-level public API (stable):

from backlogkit import ConfigStore, TicketClient, Ticket

cfg = ConfigStore('backlog.config.yaml').load()
client = TicketClient()
session = client.connect(cfg)          # OAuth2 + project reference data
created = client.add_ticket(session, Ticket(summary='Bug A'))
if created is not None:
    client.open_backlog_ticket(session, created)

Data operations never raise for remote failures: they log the Backlog error
messages and return ``None``. Only authentication raises
(``AuthenticationError``).

The CLI (``backlogkit`` / ``python -m backlogkit``) delegates to this library.
"""

from __future__ import annotations

from .client import Session, TicketClient
from .config import BacklogConfig, ConfigError, ConfigStore, load_config
from .errors import AuthenticationError, RemoteError, TransientConflictError
from .models import Attachment, BacklogError, BacklogResponse, ProjectData, Ticket
from .retry import check_is_retry, is_transient_conflict

# Version constant (keep in sync with pyproject)
__version__ = "0.1.0"

__all__ = [
    "Attachment",
    "AuthenticationError",
    "BacklogConfig",
    "BacklogError",
    "BacklogResponse",
    "ConfigError",
    "ConfigStore",
    "ProjectData",
    "RemoteError",
    "Session",
    "Ticket",
    "TicketClient",
    "TransientConflictError",
    "check_is_retry",
    "is_transient_conflict",
    "load_config",
    "__version__",
]
