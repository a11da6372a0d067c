"""
Relais de l'outbox : processus long qui publie les events en attente
vers les Redis Streams.
"""

from __future__ import annotations

import logging
import os
import signal
import threading

from inventory import config
from inventory.service_layer import bootstrap


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    settings = config.load_settings()
    publisher = bootstrap.outbox_publisher(settings)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        publisher.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()


if __name__ == "__main__":
    main()
