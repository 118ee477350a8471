""" logging setup for the grid server """

import logging
import logging.handlers
import os
import sys

from milliongrid.gridconfig import CFG

CLIENT_LOGGER = "milliongrid.client"

FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setuplogs(cfg=CFG, max_bytes=10 * 1024 * 1024, backups=5):
    """Install console and rotating file handlers.

    Server records go to ``app.log`` and the console. Records on the
    ``milliongrid.client`` logger only go to ``client.log``.
    """
    log_dir = cfg.paths.log_dir
    os.makedirs(log_dir, exist_ok=True)
    level = logging.DEBUG if getattr(cfg.general, 'debug', False) else logging.INFO
    formatter = logging.Formatter(FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    app_file = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "app.log"),
        maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
    )
    app_file.setFormatter(formatter)
    root.addHandler(app_file)

    client_log = logging.getLogger(CLIENT_LOGGER)
    client_log.propagate = False
    client_log.setLevel(logging.INFO)
    for h in list(client_log.handlers):
        client_log.removeHandler(h)
    client_file = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "client.log"),
        maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
    )
    client_file.setFormatter(logging.Formatter("%(asctime)s [client] %(message)s"))
    client_log.addHandler(client_file)

    # uvicorn and socketio are chatty at INFO
    logging.getLogger("engineio").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging to {log_dir} (level={logging.getLevelName(level)})")
