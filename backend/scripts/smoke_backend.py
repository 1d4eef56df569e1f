"""Lightweight smoke checks for the FastAPI application.

This script seeds a throwaway identity and walks the session flow
(login, me, refresh, logout) using FastAPI's TestClient so we can validate
critical integrations without running the ASGI server.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

os.environ.setdefault("JWT_ACCESS_SECRET", "smoke-access-secret-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "smoke-refresh-secret-0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from backend.app.identity import InMemoryIdentityRepository, configure_identity_repository  # type: ignore[import]
from backend.app.main import app  # type: ignore[import]
from backend.app.security.passwords import hash_password  # type: ignore[import]


def main() -> None:
    repository = InMemoryIdentityRepository()
    repository.seed(username="smoke", password_hash=hash_password("SmokePass123!"), role_name="seller")
    configure_identity_repository(repository)

    client = TestClient(app)

    root_response = client.get("/")
    print("/ status", root_response.status_code, root_response.json())

    login_response = client.post("/auth/login", json={"username": "smoke", "password": "SmokePass123!"})
    print("/auth/login status", login_response.status_code)
    print("login payload keys", sorted(login_response.json().keys()))

    me_response = client.get("/auth/me")
    print("/auth/me status", me_response.status_code)

    refresh_response = client.post("/auth/refresh")
    print("/auth/refresh status", refresh_response.status_code)

    logout_response = client.post("/auth/logout")
    print("/auth/logout status", logout_response.status_code, logout_response.json())


if __name__ == "__main__":
    main()
