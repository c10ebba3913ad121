from __future__ import annotations

import logging
import sys


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler; repeated app factory calls must not duplicate output.
    global _configured
    resolved = (level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # httpx logs full request URLs at INFO, which may include tailnet names.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
