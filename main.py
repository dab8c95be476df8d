#!/usr/bin/env python3
"""
Sales CRM -- management commands.

Usage:
  python main.py seed-admin
  python main.py seed-admin --email boss@example.com --name "Boss"
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload

Environment variables (see core/config.py for the full list):
  SECRET_KEY, REFRESH_SECRET_KEY  Token signing secrets (required unless DEBUG=true)
  DATABASE_URL                    SQLAlchemy URL (default: sqlite:///salescrm.db)
  ADMIN_NAME, ADMIN_EMAIL, ADMIN_PASSWORD
                                  Defaults for seed-admin
"""

import argparse
import getpass
import sys

from pydantic import ValidationError

from api.models import AdminUserCreate
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def seed_admin(name: str, email: str, password: str, db_url: str) -> int:
    """Create the first admin account. Returns a process exit code.

    Safe to re-run: an existing account with the same email is left alone.
    """
    try:
        body = AdminUserCreate(name=name, email=email, password=password, role="admin")
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"])
            print(f"  [!] {field}: {err['msg']}")
        return 1

    store = UserStore(db_url)
    try:
        existing = store.get_by_email(body.email)
        if existing is not None:
            print(f"  User {existing.email} already exists (role={existing.role}). Nothing to do.")
            return 0
        uid = store.create_user(
            User(
                name=body.name,
                email=body.email,
                role="admin",
                hashed_password=hash_password(body.password),
                is_verified=True,
            )
        )
    finally:
        store.close()

    print(f"  Admin created: {body.email} (id={uid})")
    return 0


def serve(host: str, port: int, reload: bool) -> None:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="salescrm",
        description="Sales CRM management commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed-admin", help="Create the first admin account")
    seed.add_argument("--name", default=settings.admin_name, help="Display name (default: ADMIN_NAME)")
    seed.add_argument("--email", default=settings.admin_email, help="Login email (default: ADMIN_EMAIL)")
    seed.add_argument(
        "--password",
        default=settings.admin_password,
        help="Password (default: ADMIN_PASSWORD; prompted for when empty)",
    )

    run = sub.add_parser("serve", help="Run the API server with uvicorn")
    run.add_argument("--host", default="127.0.0.1")
    run.add_argument("--port", type=int, default=8000)
    run.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command == "seed-admin":
        password = args.password or getpass.getpass("Admin password: ")
        sys.exit(seed_admin(args.name, args.email, password, settings.database_url))
    elif args.command == "serve":
        serve(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
