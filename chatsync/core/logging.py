from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# loggers whose output stays visible regardless of the configured level
_ALWAYS_INFO = ("chatsync.store.dispatcher", "chatsync.sync.session")


def resolve_level(*, debug: bool, level: str | None = None) -> int:
    if level:
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return logging.DEBUG if debug else logging.INFO


def configure_logging(*, debug: bool, level: str | None = None) -> int:
    root_level = resolve_level(debug=debug, level=level)
    logging.basicConfig(level=root_level, format=LOG_FORMAT, force=True)

    for name in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(root_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    for name in _ALWAYS_INFO:
        logging.getLogger(name).setLevel(min(root_level, logging.INFO))

    logging.getLogger(__name__).info(
        "Logging configured level=%s debug=%s",
        logging.getLevelName(root_level),
        debug,
    )
    return root_level
