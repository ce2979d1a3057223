# src/brit/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_loaded_from: Optional[Path] = None
_attempted = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> Optional[Path]:
    """Load BRIT_* settings from a .env file, once per process.

    Lookup: the explicit argument, else BRIT_DOTENV_PATH, else ./.env.
    BRIT_DOTENV_PATH set to an empty string turns the lookup off. Variables
    already in the environment always win.

    Returns the file that was loaded, or None.
    """
    global _loaded_from, _attempted
    if _attempted:
        return _loaded_from
    _attempted = True

    if dotenv_path is None:
        dotenv_path = os.environ.get("BRIT_DOTENV_PATH", ".env")
    if not dotenv_path.strip():
        return None

    path = Path(dotenv_path).expanduser()
    if path.is_file():
        load_dotenv(dotenv_path=path, override=False)
        _loaded_from = path
    return _loaded_from
