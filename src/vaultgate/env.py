# src/vaultgate/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

_LOADED = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """
    Load a .env file once per process.

    Path rules:
        1) dotenv_path argument, if given.
        2) VAULTGATE_DOTENV_PATH, if set.
        3) ".env" in the current working directory.

    Existing environment variables win over file values. Returns True only
    when a file was found and loaded.
    """
    global _LOADED
    if _LOADED:
        return False

    path_s = dotenv_path or os.getenv("VAULTGATE_DOTENV_PATH", ".env")
    path = Path(path_s).expanduser()
    _LOADED = True

    if not path.is_file():
        return False

    from dotenv import load_dotenv

    load_dotenv(dotenv_path=str(path), override=False)
    return True


def reset_dotenv_state() -> None:
    """Allow tests to exercise the loader more than once."""
    global _LOADED
    _LOADED = False
