#!/usr/bin/env python3
"""
Foundation admin auth core -- operator command line.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py seed-admin
  python main.py seed-admin --username admin --email admin@hopefoundation.org
  python main.py add-question "What was the name of your first pet?" --order 1
  python main.py seed-questions

Environment variables (see core/config.py for the full list):
  SECRET_KEY      Session-token signing key, at least 32 bytes. Required unless DEBUG=true.
  DATABASE_URL    SQLAlchemy URL. Defaults to a SQLite file next to this script.
  DEFAULT_ADMIN_PASSWORD
                  When set, `serve` bootstraps the default admin on startup.
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.mailer import build_mailer
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenSigner
from core.config import get_settings


def _build_service() -> AuthService:
    settings = get_settings()
    store = UserStore(settings.database_url)
    signer = TokenSigner(settings.secret_key, settings.token_expire_minutes)
    return AuthService(store, signer, build_mailer(settings), settings)


def _read_password(provided: str | None) -> str:
    """Return the password from the flag, else prompt twice without echo."""
    if provided:
        return provided
    first = getpass.getpass("Default admin password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def cmd_seed_admin(args: argparse.Namespace) -> int:
    settings = get_settings()
    service = _build_service()
    try:
        existing = service.store.get_super_admin()
        if existing is not None:
            print(f"  Default admin already exists: {existing.username}")
            return 0
        password = _read_password(args.password or settings.default_admin_password)
        admin = service.ensure_default_admin(
            args.username or settings.default_admin_username,
            args.email or settings.default_admin_email,
            password,
        )
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        service.store.close()
    print(f"  Default admin ready: {admin.username} <{admin.email}>")
    return 0


def cmd_add_question(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        question = service.create_security_question(args.question, display_order=args.order)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        service.store.close()
    print(f"  Added security question {question.id}: {question.question}")
    return 0


def cmd_seed_questions(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        created = service.ensure_default_security_questions()
    finally:
        service.store.close()
    if created:
        print(f"  Seeded {created} default security questions")
    else:
        print("  Security questions already present; nothing seeded")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="foundation-auth",
        description="Authentication and session core for the foundation admin panel.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=cmd_serve)

    seed = sub.add_parser("seed-admin", help="Create the protected default admin if it does not exist")
    seed.add_argument("--username", help="Default: DEFAULT_ADMIN_USERNAME or 'admin'")
    seed.add_argument("--email", help="Default: DEFAULT_ADMIN_EMAIL")
    seed.add_argument(
        "--password",
        help="Default: DEFAULT_ADMIN_PASSWORD, else prompt. Prefer the prompt; flags end up in shell history.",
    )
    seed.set_defaults(func=cmd_seed_admin)

    question = sub.add_parser("add-question", help="Add a security question for password setup")
    question.add_argument("question", help="Question text")
    question.add_argument("--order", type=int, default=None, help="Display order (lower first)")
    question.set_defaults(func=cmd_add_question)

    seed_q = sub.add_parser("seed-questions", help="Add the default security questions to an empty table")
    seed_q.set_defaults(func=cmd_seed_questions)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
