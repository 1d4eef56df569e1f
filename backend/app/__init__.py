"""Bookkeeping dashboard auth backend.

Dotenv files are read here, before any module imports ``config``, so their
values are visible even when the app is started straight from uvicorn. A file
named after ``ENVIRONMENT`` (``.env.production`` and so on) takes precedence
over the shared ones, and variables already set in the process always win.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator, List

from dotenv import load_dotenv

_REPO_ROOT = Path(__file__).resolve().parents[2]


def _dotenv_candidates() -> Iterator[Path]:
	environment = os.environ.get("ENVIRONMENT", "development")
	for base in (_REPO_ROOT / "backend", _REPO_ROOT):
		yield base / f".env.{environment}"
		yield base / ".env.local"
		yield base / ".env"


def load_environment() -> List[Path]:
	loaded = []
	for candidate in _dotenv_candidates():
		if candidate.is_file():
			# First file to define a key keeps it.
			load_dotenv(dotenv_path=candidate, override=False)
			loaded.append(candidate)
	return loaded


load_environment()

__all__ = ["load_environment"]
