"""Distribution entry package for the AnimeShelf service.

The application itself lives in :mod:`app`; this package only exposes it
under the project name and provides ``python -m animeshelf``.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = ["app", "create_app", "__version__"]

__version__ = "1.0.0"


def __getattr__(name: str) -> Any:
    if name in {"app", "create_app"}:
        return getattr(import_module("app.main"), name)
    raise AttributeError(f"module 'animeshelf' has no attribute {name}")
