#!/usr/bin/env python3
"""
Elixpo Accounts -- operator command line.

Usage:
  python main.py generate-keys
  python main.py generate-keys --out-dir ./keys
  python main.py bootstrap-admin admin@example.com
  python main.py purge
  python main.py serve --host 0.0.0.0 --port 8000

Configuration comes from the same environment variables (and .env file) as
the server; see core/config.py.
"""

import argparse
import getpass
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from auth.capabilities import SystemRole
from auth.errors import AuthError
from auth.flow import AuthorizationFlowManager, normalize_email
from auth.rbac import PermissionResolver
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import get_settings


def generate_keys(out_dir: str | None) -> int:
    """Print (or write) a fresh Ed25519 key pair in PEM form."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = (
        private_key.public_key()
        .public_bytes(encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode()
    )
    if out_dir is None:
        print(private_pem + public_pem, end="")
        print("\n  Set JWT_PRIVATE_KEY and JWT_PUBLIC_KEY to the two blocks above.", file=sys.stderr)
        return 0

    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    private_path = target / "jwt_private.pem"
    private_path.write_text(private_pem)
    private_path.chmod(0o600)
    (target / "jwt_public.pem").write_text(public_pem)
    print(f"  Wrote {private_path} and {target / 'jwt_public.pem'}")
    return 0


def bootstrap_admin(email: str, password: str | None) -> int:
    """Create (or promote) a password account holding the super-admin role."""
    settings = get_settings()
    store = CredentialStore(settings.database_url)
    try:
        principal = store.get_principal_by_email(normalize_email(email))
        if principal is None:
            if password is None:
                password = getpass.getpass("  Password for the new admin: ")
            if len(password) < 8:
                print("  [!] Password must be at least 8 characters.")
                return 1
            flow = AuthorizationFlowManager(store, settings, TokenService(store, settings))
            principal = flow.register_with_password(email, password, display_name="Administrator")
            print(f"  Created {principal.email} ({principal.id})")
        else:
            print(f"  {principal.email} already exists ({principal.id}); granting super admin")
        PermissionResolver(store).assign_role(principal.id, SystemRole.SUPER_ADMIN.value)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()
    print("  Super-admin role assigned.")
    return 0


def purge() -> int:
    """Delete expired rate-limit entries, authorization requests and refresh tokens."""
    from api.main import purge_expired_records

    store = CredentialStore(get_settings().database_url)
    try:
        counts = purge_expired_records(store)
    finally:
        store.close()
    for table, count in counts.items():
        print(f"  {table}: {count} removed")
    return 0


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="elixpo-accounts",
        description="Operator tools for the Elixpo Accounts identity provider.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py generate-keys --out-dir ./keys
  JWT_PRIVATE_KEY="$(cat keys/jwt_private.pem)" python main.py serve
  python main.py bootstrap-admin admin@example.com
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keys = sub.add_parser("generate-keys", help="Generate an Ed25519 key pair for token signing")
    keys.add_argument("--out-dir", metavar="DIR", help="Write jwt_private.pem / jwt_public.pem here instead of stdout")

    admin = sub.add_parser("bootstrap-admin", help="Create or promote a super-admin account")
    admin.add_argument("email", help="Email address of the administrator")
    admin.add_argument("--password", help="Password for a new account (prompted when omitted)")

    sub.add_parser("purge", help="Delete expired limiter, handshake and refresh-token rows")

    run = sub.add_parser("serve", help="Run the API with uvicorn")
    run.add_argument("--host", default="127.0.0.1")
    run.add_argument("--port", type=int, default=8000)
    run.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command == "generate-keys":
        sys.exit(generate_keys(args.out_dir))
    elif args.command == "bootstrap-admin":
        sys.exit(bootstrap_admin(args.email, args.password))
    elif args.command == "purge":
        sys.exit(purge())
    elif args.command == "serve":
        sys.exit(serve(args.host, args.port, args.reload))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
