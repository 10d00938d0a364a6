"""
.env loading for local runs.

With ENVIRONMENT=prod (the default) nothing is loaded; deployments inject
real environment variables. Elsewhere `.env` is loaded without overriding
the shell, then `.env.local` on top of it.

Must not import `copytrader.config.config`: it runs before settings are built.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ENV_FILES = (".env", ".env.local")


def is_prod_environment() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_env_files(directory: Path | None = None) -> List[Path]:
    """Load the env files found in `directory` (default: cwd). Returns them in load order."""
    if is_prod_environment():
        return []

    directory = directory or Path.cwd()
    loaded: List[Path] = []
    for name in ENV_FILES:
        path = directory / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=name == ".env.local")
            loaded.append(path)
    return loaded
