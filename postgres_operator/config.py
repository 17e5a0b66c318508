"""
Operator configuration and logging setup

Runtime settings are read from environment variables once at import time.
Names and in-container paths of generated objects live in naming.py.
"""

import logging
import os
import sys

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'


class Config:
    """Operator configuration loaded from environment variables"""

    # Kubernetes settings; an empty namespace watches the whole cluster
    WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "")
    FIELD_MANAGER = os.getenv("FIELD_MANAGER", "postgres-operator")

    # Controller settings
    WORKER_COUNT = int(os.getenv("WORKER_COUNT", "2"))
    RECONCILE_TIMEOUT = float(os.getenv("RECONCILE_TIMEOUT", "60"))
    WATCH_TIMEOUT = int(os.getenv("WATCH_TIMEOUT", "300"))
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"

    # Observability
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    METRICS_PORT = int(os.getenv("METRICS_PORT", "8080"))

    # Images used when the PostgresCluster does not name one
    DEFAULT_POSTGRES_IMAGE = os.getenv("RELATED_IMAGE_POSTGRES", "registry.developers.crunchydata.com/crunchydata/crunchy-postgres-ha:centos8-13.2-4.6.2")
    DEFAULT_PGBOUNCER_IMAGE = os.getenv("RELATED_IMAGE_PGBOUNCER", "registry.developers.crunchydata.com/crunchydata/crunchy-pgbouncer:centos8-1.15-4.6.2")


def setup_logging(level: str = Config.LOG_LEVEL):
    """Configure structured logging for the operator process"""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # The kubernetes client logs every request body at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
