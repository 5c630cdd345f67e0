"""Project-wide settings and defaults."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

# Base paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("CERTMANAGER_DATA_DIR", str(PROJECT_ROOT / "data")))

REQUESTS_PATH = DATA_DIR / "certificates.json"
SECRETS_PATH = DATA_DIR / "secrets.json"
WORKLOADS_PATH = DATA_DIR / "workloads.json"
AUDIT_LOG_PATH = DATA_DIR / "audit_log.json"

# Issuance defaults
DEFAULT_KEY_SIZE = int(os.environ.get("CERTMANAGER_KEY_SIZE", "2048"))
MIN_KEY_SIZE = 2048

# Ownership markers
FINALIZER = "certs.k8c.io/certificate"
CERTIFICATE_ENV_NAME = "CERTIFICATE_RESOURCE_VERSION"

# Optimistic concurrency
CONFLICT_RETRIES = int(os.environ.get("CERTMANAGER_CONFLICT_RETRIES", "3"))

# Control loop
SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "true").lower() == "true"
RESYNC_INTERVAL_SECONDS = int(os.environ.get("RESYNC_INTERVAL_SECONDS", "600"))
RETRY_BACKOFF_SECONDS = [5, 15, 60, 240]

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
