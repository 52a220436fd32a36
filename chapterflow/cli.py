from __future__ import annotations

import argparse
import json
from typing import Callable

from chapterflow.core.errors import ChapterflowError
from chapterflow.core.service import SessionService
from chapterflow.server.app import build_service
from chapterflow.server.config import get_settings


def _issue(service: SessionService, args: argparse.Namespace) -> None:
    print(service.issue_code(args.code))


def _reset(service: SessionService, args: argparse.Namespace) -> None:
    service.reset(args.code)
    print(f"reset {args.code}")


def _show(service: SessionService, args: argparse.Namespace) -> None:
    session = service.get_session(args.code)
    print(json.dumps(session.model_dump(mode="json"), ensure_ascii=False, indent=2))


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("chapterflow.server.app:create_app", factory=True, host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chapterflow-admin", description="Manage chapterflow session codes")
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Create a session code with a fresh state")
    issue.add_argument("--code", default=None, help="Code to create (random when omitted)")

    reset = sub.add_parser("reset", help="Reset a session to the initial state")
    reset.add_argument("code")

    show = sub.add_parser("show", help="Print the stored session state")
    show.add_argument("code")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None, service: SessionService | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "serve":
        _serve(args)
        return 0

    handlers: dict[str, Callable[[SessionService, argparse.Namespace], None]] = {
        "issue": _issue,
        "reset": _reset,
        "show": _show,
    }
    service = service or build_service(get_settings())
    try:
        handlers[args.command](service, args)
    except ChapterflowError as exc:
        print(f"error: {exc.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
