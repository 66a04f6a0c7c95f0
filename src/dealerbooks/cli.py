"""CLI commands for dealerbooks setup and administration.

Usage:
    dealerbooks init-db
    dealerbooks create-user --email anna@bilhallen.se --organization "Bilhallen AB"
    dealerbooks serve --port 8000
"""

import argparse
import sys

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.auth import issue_token
from dealerbooks.config import Settings
from dealerbooks.db import Organization, Profile, init_db
from dealerbooks.logging_config import configure_logging, mask_token


def create_user(
    engine,
    email: str,
    organization: str,
    full_name: str | None = None,
    role: str = "user",
) -> dict:
    """Create a profile (and its organization if new) and issue an API token.

    Returns a dict with user_id, organization_id and the plaintext token.
    """
    with Session(engine) as session:
        if session.scalars(sa.select(Profile).where(Profile.email == email)).first():
            raise ValueError(f"A profile with email {email} already exists")

        org = session.scalars(
            sa.select(Organization).where(Organization.name == organization)
        ).first()
        if not org:
            org = Organization(name=organization)
            session.add(org)
            session.flush()

        profile = Profile(
            organization_id=org.id, email=email, full_name=full_name, role=role
        )
        session.add(profile)
        session.commit()

        token = issue_token(session, profile.user_id)
        return {"user_id": profile.user_id, "organization_id": org.id, "token": token}


def _cmd_init_db(args, settings: Settings) -> None:
    init_db(settings.database_path)
    print(f"Database initialized at {settings.database_path}")


def _cmd_create_user(args, settings: Settings) -> None:
    engine = init_db(settings.database_path)
    try:
        result = create_user(
            engine, args.email, args.organization, full_name=args.name, role=args.role
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("User created!")
    print(f"  User ID:         {result['user_id']}")
    print(f"  Organization ID: {result['organization_id']}")
    print()
    print("API token (shown once, store it safely):")
    print(f"  {result['token']}")


def _cmd_serve(args, settings: Settings) -> None:
    import uvicorn

    from dealerbooks.api import create_app

    if not settings.fortnox_client_id or not settings.fortnox_client_secret:
        print("Warning: FORTNOX_CLIENT_ID / FORTNOX_CLIENT_SECRET are not set in .env")
    else:
        print(f"Fortnox client: {mask_token(settings.fortnox_client_id)}")

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_config=None,
    )


def main(argv: list[str] | None = None) -> None:
    """Entry point for the dealerbooks CLI."""
    parser = argparse.ArgumentParser(description="Dealerbooks administration")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    user_parser = sub.add_parser("create-user", help="Create a user and print an API token")
    user_parser.add_argument("--email", required=True)
    user_parser.add_argument("--organization", required=True)
    user_parser.add_argument("--name", default=None)
    user_parser.add_argument("--role", choices=["admin", "user"], default="user")

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(settings.log_level, settings.log_json, settings.log_file)

    commands = {
        "init-db": _cmd_init_db,
        "create-user": _cmd_create_user,
        "serve": _cmd_serve,
    }
    commands[args.command](args, settings)


if __name__ == "__main__":
    main()
