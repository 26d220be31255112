from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    # websockets logs every handshake at INFO; the relay logs its own connects.
    logging.getLogger("websockets").setLevel(logging.WARNING)
