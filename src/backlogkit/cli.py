"""backlogkit CLI.

Subcommands:
  init          -> write a starter configuration file
  auth          -> run the OAuth2 flow and load project reference data
  open          -> open the ticket list (or a single ticket) in a browser
  open-project  -> open the project home page
  show          -> print a ticket
  create        -> create a ticket
  update        -> update fields of an existing ticket
  attach        -> upload a file, optionally linking it to a ticket
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import webbrowser
from pathlib import Path
from typing import Any

from backlogkit.browser import open_url, project_url, ticket_list_url, ticket_url
from backlogkit.client import Session, TicketClient
from backlogkit.config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_TOKEN_CACHE,
    BacklogConfig,
    ConfigStore,
)
from backlogkit.errors import AuthenticationError
from backlogkit.models import ProjectData, Ticket
from backlogkit.runtime import execute_command, prepare_config

EXIT_NO_RESULT = 1
EXIT_AUTH_FAILED = 2

_MAX_HELP_WIDTH = 100


class _HelpFormatter(argparse.HelpFormatter):
    def __init__(self, prog: str) -> None:
        super().__init__(prog, max_help_position=30, width=_MAX_HELP_WIDTH)


class _FormatterArgumentParser(argparse.ArgumentParser):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("formatter_class", _HelpFormatter)
        super().__init__(*args, **kwargs)


def _add_ticket_field_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description")
    parser.add_argument("--type", dest="ticket_type", help="Ticket type name")
    parser.add_argument("--priority", help="Priority name")
    parser.add_argument("--category", action="append", default=[], help="Category name (repeatable)")
    parser.add_argument("--milestone", action="append", default=[], help="Milestone name (repeatable)")
    parser.add_argument("--assignee", help="Assignee name or user id")
    parser.add_argument("--attach", action="append", default=[], help="File to attach (repeatable)")
    parser.add_argument("--open", action="store_true", help="Open the ticket in a browser afterwards")


def _build_parser() -> argparse.ArgumentParser:
    """Construct top-level CLI parser with subcommands."""
    p = _FormatterArgumentParser(prog="backlogkit", description="Backlog ticket integration")
    p.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress informational logging (env: BACKLOGKIT_QUIET=1)",
    )
    sub = p.add_subparsers(
        dest="cmd",
        required=True,
        parser_class=_FormatterArgumentParser,
        metavar="<command>",
    )

    init = sub.add_parser("init", help="Write a starter configuration file")
    init.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    init.add_argument("--space", default="", help="Space key (the subdomain)")
    init.add_argument("--domain", default="backlog.com")
    init.add_argument("--project", default="", help="Project key")
    init.add_argument("--client-id", default="")
    init.add_argument("--redirect-uri", default="")
    init.add_argument("--token-cache", default=DEFAULT_TOKEN_CACHE)
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    auth = sub.add_parser("auth", help="Authenticate and load project reference data")
    auth.add_argument("--config", default=DEFAULT_CONFIG_FILE)

    op = sub.add_parser("open", help="Open the ticket list in a browser")
    op.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    op.add_argument("--ticket", help="Open a single ticket by key instead")

    opp = sub.add_parser("open-project", help="Open the project home page")
    opp.add_argument("--config", default=DEFAULT_CONFIG_FILE)

    show = sub.add_parser("show", help="Print a ticket as JSON")
    show.add_argument("key")
    show.add_argument("--config", default=DEFAULT_CONFIG_FILE)

    create = sub.add_parser("create", help="Create a ticket")
    create.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    create.add_argument("--summary", required=True)
    _add_ticket_field_args(create)

    update = sub.add_parser("update", help="Update an existing ticket")
    update.add_argument("key")
    update.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    update.add_argument("--summary")
    _add_ticket_field_args(update)

    attach = sub.add_parser("attach", help="Upload a file to the space")
    attach.add_argument("path")
    attach.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    attach.add_argument("--ticket", help="Link the uploaded file to this ticket")
    return p


def _ticket_summary(ticket: Ticket) -> dict[str, Any]:
    return {
        "key": ticket.key,
        "summary": ticket.summary,
        "type": ticket.ticket_type.name if ticket.ticket_type else None,
        "priority": ticket.priority.name if ticket.priority else None,
        "assignee": ticket.assignee.name if ticket.assignee else None,
        "categories": [c.name for c in ticket.categories],
        "milestones": [m.name for m in ticket.milestones],
        "description": ticket.description,
    }


def _cmd_init(args: argparse.Namespace) -> int:
    path = Path(args.config)
    if path.exists() and not args.force:
        print(f"[init] skipped (exists) {path}")
        return 0
    cfg = BacklogConfig(
        space_key=args.space,
        domain=args.domain,
        project_key=args.project,
        client_id=args.client_id,
        redirect_uri=args.redirect_uri,
        token_cache_path=args.token_cache,
    )
    ConfigStore(path).save(cfg)
    print(f"[init] created {path}")
    print("[init] set BACKLOG_CLIENT_SECRET (or oauth.client_secret) before running 'auth'")
    print(f"[init] add {args.token_cache} to .gitignore")
    return 0


def _cmd_open(cfg: BacklogConfig, args: argparse.Namespace) -> int:
    if args.ticket:
        url = ticket_url(cfg.space_key, cfg.domain, args.ticket)
    else:
        url = ticket_list_url(cfg.space_key, cfg.domain, cfg.project_key)
    print(open_url(url, webbrowser.open))
    return 0


def _cmd_open_project(cfg: BacklogConfig) -> int:
    print(open_url(project_url(cfg.space_key, cfg.domain, cfg.project_key), webbrowser.open))
    return 0


def _cmd_auth(client: TicketClient, cfg: BacklogConfig) -> int:
    session = client.connect(cfg)
    data = session.data
    print(f"[auth] authenticated to {cfg.base_url}")
    print(f"[auth] project: {session.project.name if session.project else '<unavailable>'}")
    print(
        f"[auth] ticket types={len(data.ticket_types)} priorities={len(data.priorities)} "
        f"categories={len(data.categories)} milestones={len(data.milestones)} users={len(data.users)}"
    )
    return 0


def _cmd_show(client: TicketClient, cfg: BacklogConfig, args: argparse.Namespace) -> int:
    session = client.authenticate(cfg)
    ticket = client.get_ticket_by_key(session, args.key)
    if ticket is None:
        print(f"[show] ticket {args.key} not found", file=sys.stderr)
        return EXIT_NO_RESULT
    print(json.dumps(_ticket_summary(ticket), indent=2, ensure_ascii=False))
    return 0


def _resolve_names(data: ProjectData, ticket: Ticket, args: argparse.Namespace) -> list[str]:
    """Apply named reference fields from ``args`` to ``ticket``; return unknown names."""
    unknown: list[str] = []
    if args.ticket_type:
        found = data.find_ticket_type(args.ticket_type)
        if found is None:
            unknown.append(f"type '{args.ticket_type}'")
        ticket.ticket_type = found or ticket.ticket_type
    if args.priority:
        priority = data.find_priority(args.priority)
        if priority is None:
            unknown.append(f"priority '{args.priority}'")
        ticket.priority = priority or ticket.priority
    if args.assignee:
        user = data.find_user(args.assignee)
        if user is None:
            unknown.append(f"assignee '{args.assignee}'")
        ticket.assignee = user or ticket.assignee
    if args.category:
        categories = [(name, data.find_category(name)) for name in args.category]
        unknown.extend(f"category '{n}'" for n, c in categories if c is None)
        ticket.categories = [c for _, c in categories if c is not None]
    if args.milestone:
        milestones = [(name, data.find_milestone(name)) for name in args.milestone]
        unknown.extend(f"milestone '{n}'" for n, m in milestones if m is None)
        ticket.milestones = [m for _, m in milestones if m is not None]
    if args.description is not None:
        ticket.description = args.description
    return unknown


def _upload_attachments(client: TicketClient, session: Session, paths: list[str]) -> list[int] | None:
    ids: list[int] = []
    for path in paths:
        attachment = client.add_attachment(session, path)
        if attachment is None:
            return None
        ids.append(attachment.id)
    return ids


def _finish_ticket(
    client: TicketClient, session: Session, ticket: Ticket | None, args: argparse.Namespace, verb: str
) -> int:
    if ticket is None:
        print(f"[{args.cmd}] ticket was not {verb}", file=sys.stderr)
        return EXIT_NO_RESULT
    print(f"[{args.cmd}] {verb} {ticket.key}")
    if args.open:
        client.open_backlog_ticket(session, ticket)
    return 0


def _cmd_create(client: TicketClient, cfg: BacklogConfig, args: argparse.Namespace) -> int:
    session = client.connect(cfg)
    ticket = Ticket(summary=args.summary)
    unknown = _resolve_names(session.data, ticket, args)
    if ticket.ticket_type is None and session.data.ticket_types and not args.ticket_type:
        ticket.ticket_type = session.data.ticket_types[0]
    if ticket.priority is None and not args.priority:
        ticket.priority = session.data.find_priority("Normal")
    if unknown:
        print(f"[create] unknown {', '.join(unknown)}", file=sys.stderr)
        return EXIT_NO_RESULT
    attachment_ids = _upload_attachments(client, session, args.attach)
    if attachment_ids is None:
        return EXIT_NO_RESULT
    ticket.attachment_ids = attachment_ids
    return _finish_ticket(client, session, client.add_ticket(session, ticket), args, "created")


def _cmd_update(client: TicketClient, cfg: BacklogConfig, args: argparse.Namespace) -> int:
    session = client.connect(cfg)
    ticket = client.get_ticket_by_key(session, args.key)
    if ticket is None:
        print(f"[update] ticket {args.key} not found", file=sys.stderr)
        return EXIT_NO_RESULT
    if args.summary:
        ticket.summary = args.summary
    unknown = _resolve_names(session.data, ticket, args)
    if unknown:
        print(f"[update] unknown {', '.join(unknown)}", file=sys.stderr)
        return EXIT_NO_RESULT
    attachment_ids = _upload_attachments(client, session, args.attach)
    if attachment_ids is None:
        return EXIT_NO_RESULT
    ticket.attachment_ids = attachment_ids
    return _finish_ticket(client, session, client.update_ticket(session, ticket), args, "updated")


def _cmd_attach(client: TicketClient, cfg: BacklogConfig, args: argparse.Namespace) -> int:
    session = client.authenticate(cfg)
    attachment = client.add_attachment(session, args.path)
    if attachment is None:
        return EXIT_NO_RESULT
    print(f"[attach] uploaded {attachment.name} id={attachment.id}")
    if not args.ticket:
        return 0
    ticket = client.get_ticket_by_key(session, args.ticket)
    if ticket is None:
        print(f"[attach] ticket {args.ticket} not found", file=sys.stderr)
        return EXIT_NO_RESULT
    ticket.attachment_ids = [attachment.id]
    if client.update_ticket(session, ticket) is None:
        return EXIT_NO_RESULT
    print(f"[attach] linked to {ticket.key}")
    return 0


def _require_cfg(cfg: BacklogConfig | None) -> BacklogConfig:
    if cfg is None:  # pragma: no cover
        raise RuntimeError("Configuration not loaded")
    return cfg


def _authenticated(handler: Any) -> Any:
    def _run() -> int:
        try:
            return int(handler())
        except AuthenticationError as exc:
            print(f"[auth] authentication failed: {exc}", file=sys.stderr)
            return EXIT_AUTH_FAILED

    return _run


def _build_handlers(
    args: argparse.Namespace, cfg: BacklogConfig | None, client: TicketClient
) -> dict[str, Any]:
    return {
        "init": lambda: _cmd_init(args),
        "open": lambda: _cmd_open(_require_cfg(cfg), args),
        "open-project": lambda: _cmd_open_project(_require_cfg(cfg)),
        "auth": _authenticated(lambda: _cmd_auth(client, _require_cfg(cfg))),
        "show": _authenticated(lambda: _cmd_show(client, _require_cfg(cfg), args)),
        "create": _authenticated(lambda: _cmd_create(client, _require_cfg(cfg), args)),
        "update": _authenticated(lambda: _cmd_update(client, _require_cfg(cfg), args)),
        "attach": _authenticated(lambda: _cmd_attach(client, _require_cfg(cfg), args)),
    }


def main(argv: list[str] | None = None, *, client: TicketClient | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "quiet", False) and os.environ.get("BACKLOGKIT_QUIET") == "1":
        args.quiet = True
    cfg = prepare_config(args)
    handlers = _build_handlers(args, cfg, client or TicketClient())
    handler = handlers.get(args.cmd)
    if handler is None:  # pragma: no cover - argparse enforces valid choices
        parser.print_help()
        return 1
    return execute_command(handler, args.cmd)


__all__ = ["main"]


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

