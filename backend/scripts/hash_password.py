"""Print a bcrypt hash suitable for SEED_ADMIN_PASSWORD_HASH."""
from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from backend.app.security.passwords import BcryptPasswordHasher, PasswordHashingError


def main() -> int:
    p = argparse.ArgumentParser(description="Hash a password with bcrypt")
    p.add_argument("--rounds", type=int, default=None, help="Cost factor (default: BCRYPT_ROUNDS)")
    args = p.parse_args()

    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat: "):
        print("ERROR: passwords do not match")
        return 1

    try:
        print(BcryptPasswordHasher(rounds=args.rounds).hash(password))
    except PasswordHashingError as exc:
        print(f"ERROR: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
