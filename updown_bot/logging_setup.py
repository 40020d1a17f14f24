from __future__ import annotations

import logging

# Third-party loggers that flood DEBUG with per-request lines at book cadence.
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "py_clob_client")


def configure_logging(level: str, paper_mode: bool = True) -> None:
    """Root logging with the trading mode stamped on every line."""
    mode = "PAPER" if paper_mode else "LIVE"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=f"%(asctime)s.%(msecs)03d | %(levelname)s | {mode} | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
