"""Logging configuration for recall.

Library chatter (litellm, httpx) is suppressed by default; ``--verbose``
switches the ``recall`` namespace and its dependencies to DEBUG on stderr.
"""

from __future__ import annotations

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "openai")


def configure_quiet_mode(quiet: bool = True) -> None:
    """Silence verbose third-party output.

    Args:
        quiet: If True, suppress verbose output. If False, leave levels untouched.
    """
    if not quiet:
        return

    import litellm

    litellm.suppress_debug_info = True
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode() -> None:
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root_logger.addHandler(handler)

    for name in ("recall", *_NOISY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_dir: Path | str) -> RotatingFileHandler:
    """Attach a persistent operations log next to the store.

    Writes to {store_dir}/recall-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so callers can remove it.
    """
    log_path = Path(store_dir) / "recall-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    recall_logger = logging.getLogger("recall")
    recall_logger.addHandler(handler)
    if recall_logger.level == logging.NOTSET or recall_logger.level > logging.INFO:
        recall_logger.setLevel(logging.INFO)

    return handler
