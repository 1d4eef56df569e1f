from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Ensure repository root is on sys.path so `import backend.*` works when running this file directly
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

# Provide default signing secrets for local testing if not set
os.environ.setdefault("JWT_ACCESS_SECRET", "dev-access-secret-change-me-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me-0123456789")

from backend.app.security.tokens import TokenConfigurationError, TokenKind, TokenPayload, TokenService

ROLE_LEVELS = {"seller": 0, "manager": 1, "admin": 2}


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate a signed session token for local testing")
    p.add_argument("--kind", default="access", choices=[kind.value for kind in TokenKind], help="Token type")
    p.add_argument("--role", default="seller", choices=sorted(ROLE_LEVELS), help="Role claim")
    p.add_argument("--user-id", default="local-user", help="Subject claim")
    p.add_argument("--username", default="local", help="Username claim")
    p.add_argument("--version", type=int, default=0, help="Token version claim (default: 0)")
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    try:
        service = TokenService.from_config()
    except TokenConfigurationError as exc:
        print(f"ERROR: {exc}")
        return 1

    payload = TokenPayload(
        user_id=args.user_id,
        username=args.username,
        role=args.role,
        role_level=ROLE_LEVELS[args.role],
        token_version=args.version,
    )
    print(service.issue(TokenKind(args.kind), payload))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
