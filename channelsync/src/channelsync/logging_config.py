from __future__ import annotations

import logging

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

_INITIALIZED = False


def setup_logging(level: str = "INFO", force: bool = False) -> None:
    """Install one stream handler on the root logger; later calls are no-ops."""

    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    for handler in root.handlers:
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    _INITIALIZED = True


__all__ = ["setup_logging"]
