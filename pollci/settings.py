import os

DATA_DIR = os.getenv("DATA_DIR", "./data")
PROJECTS_DIR = os.getenv("PROJECTS_DIR", os.path.join(DATA_DIR, "projects"))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'pollci.db')}")

POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "10"))
WORKERS = int(os.getenv("POLLCI_WORKERS", "4"))

# Unset means external commands may run forever
BUILD_TIMEOUT = float(os.getenv("BUILD_TIMEOUT")) if os.getenv("BUILD_TIMEOUT") else None

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
