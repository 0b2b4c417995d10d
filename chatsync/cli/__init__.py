"""Command-line interface package for chatsync.

:func:`main` is exposed via attribute access (``from chatsync.cli import
main``) and imported lazily so that ``chatsync.cli.main`` stays importable
as a module.
"""

from importlib import import_module
from typing import Any


def __getattr__(name: str) -> Any:
    if name == "main":
        return import_module(".main", __name__).main
    raise AttributeError(f"module {__name__!r} has no attribute {name}")


__all__ = ["main"]
