#!/usr/bin/env python3
"""
Suraksha Command Line Interface

Usage:
    suraksha init-db [--db <file>]
    suraksha keygen --output <file> [--key-id <kid>]
    suraksha cleanup-otp [--db <file>]
    suraksha create-responder <username> --name <name> [--role <role>] [--password <pw>] [--db <file>]
    suraksha stats [--db <file>]
    suraksha verify-token <token> [--signing-key <file>]
"""

import argparse
import getpass
import json
import sys
from typing import List, Optional

from . import config
from .errors import SurakshaError
from .logging_config import configure_logging, request_context


def print_json(data: dict):
    """Print JSON to stdout."""
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(args):
    """Create the database schema."""
    from .db import open_database

    db = open_database(args.db)
    try:
        print(f"Database initialized: {db.path}")
    finally:
        db.close()
    return 0


def cmd_keygen(args):
    """Generate the Ed25519 token signing key file."""
    from .tokens import generate_signing_key_file

    kid = generate_signing_key_file(args.output, args.key_id)
    print(f"Signing key saved to: {args.output}")
    print(f"\nGenerated key: {kid}", file=sys.stderr)
    return 0


def cmd_cleanup_otp(args):
    """Purge expired one-time codes."""
    from .db import open_database
    from .otp import OTPAuthenticator

    db = open_database(args.db)
    try:
        removed = OTPAuthenticator(db).cleanup_expired()
    finally:
        db.close()
    print(f"Removed {removed} expired code(s)")
    return 0


def cmd_create_responder(args):
    """Create a responder account (operator bootstrap)."""
    from .db import open_database
    from .responders import ResponderRegistry

    password = args.password or getpass.getpass("Password: ")
    db = open_database(args.db)
    try:
        responder = ResponderRegistry(db).create({
            "username": args.username,
            "password": password,
            "name": args.name,
            "role": args.role,
            "badgeNumber": args.badge_number,
        })
    except SurakshaError as e:
        print(f"✗ {e.code}: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()
    print(f"Created {responder.role} account: {responder.username}")
    return 0


def cmd_stats(args):
    """Print row counts and alert/complaint aggregates."""
    from .complaints import ComplaintStore
    from .db import open_database
    from .identities import IdentityRegistry
    from .incidents import IncidentStore
    from .responders import ResponderRegistry

    db = open_database(args.db)
    try:
        print_json({
            "files": config.validate_config(db_path=db.path),
            "tables": db.stats(),
            "identities": IdentityRegistry(db).stats(),
            "responders": ResponderRegistry(db).stats(),
            "alerts": IncidentStore(db).stats(),
            "complaints": ComplaintStore(db).stats(),
        })
    finally:
        db.close()
    return 0


def cmd_verify_token(args):
    """Verify a bearer token and print its claims."""
    from .tokens import FileSigningKeyProvider, TokenIssuer

    issuer = TokenIssuer(FileSigningKeyProvider(args.signing_key))
    try:
        claims = issuer.verify(args.token)
    except SurakshaError as e:
        print(f"✗ {e.code}: {e.message}", file=sys.stderr)
        return 1
    print_json(claims.to_dict())
    print(f"\n✓ valid {claims.role} token for {claims.subject}", file=sys.stderr)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Suraksha CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  suraksha init-db --db data/suraksha.db
  suraksha keygen -o secrets/token_signing_key.json
  suraksha cleanup-otp
  suraksha create-responder admin1 --name "Duty Admin" --role admin
  suraksha stats
  suraksha verify-token eyJhbGciOi...
        """
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.add_argument("--db", default=config.DB_PATH, help="SQLite database file")

    keygen_parser = subparsers.add_parser("keygen", help="Generate token signing key")
    keygen_parser.add_argument("-o", "--output", default=config.TOKEN_SIGNING_KEY_PATH,
                               help="Output file for the signing key")
    keygen_parser.add_argument("-k", "--key-id", help="Key identifier")

    cleanup_parser = subparsers.add_parser("cleanup-otp", help="Purge expired one-time codes")
    cleanup_parser.add_argument("--db", default=config.DB_PATH, help="SQLite database file")

    responder_parser = subparsers.add_parser("create-responder", help="Create a responder account")
    responder_parser.add_argument("username", help="Sign-in name")
    responder_parser.add_argument("--name", required=True, help="Display name")
    responder_parser.add_argument("--role", default="officer", choices=["officer", "supervisor", "admin"])
    responder_parser.add_argument("--badge-number", help="Badge number")
    responder_parser.add_argument("--password", help="Password (prompted when omitted)")
    responder_parser.add_argument("--db", default=config.DB_PATH, help="SQLite database file")

    stats_parser = subparsers.add_parser("stats", help="Show store statistics")
    stats_parser.add_argument("--db", default=config.DB_PATH, help="SQLite database file")

    verify_parser = subparsers.add_parser("verify-token", help="Verify a bearer token")
    verify_parser.add_argument("token", help="Compact token string")
    verify_parser.add_argument("-s", "--signing-key", default=config.TOKEN_SIGNING_KEY_PATH,
                               help="Signing key JSON file")

    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_format=config.LOG_JSON, log_file=config.LOG_FILE or None)

    commands = {
        "init-db": cmd_init_db,
        "keygen": cmd_keygen,
        "cleanup-otp": cmd_cleanup_otp,
        "create-responder": cmd_create_responder,
        "stats": cmd_stats,
        "verify-token": cmd_verify_token,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0
    with request_context():
        return handler(args)


if __name__ == "__main__":
    sys.exit(main())
