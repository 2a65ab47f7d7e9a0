"""
This module contains the configuration settings for workerpool.
It defines supervisor timings, process naming and logging configuration.
Values can be overridden from the environment or a `.env` file.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
OVERRIDES_JSON_PATH = pathlib.Path(os.getenv("WORKERPOOL_OVERRIDES", str(BASE_DIR / "overrides.json")))

#* --- Process Settings ---
PROC_TITLE = os.getenv("WORKERPOOL_PROC_TITLE", "WorkerPool")
START_METHOD = os.getenv("WORKERPOOL_START_METHOD", "fork" if hasattr(os, "fork") else "spawn")
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable)
CAPTURE_WORKER_OUTPUT = _env_bool("WORKERPOOL_CAPTURE_OUTPUT")

#* --- Supervisor Settings ---
STARTUP_SPLAY = float(os.getenv("WORKERPOOL_STARTUP_SPLAY", "0"))        # seconds between starts
GRACE_PERIOD = float(os.getenv("WORKERPOOL_GRACE_PERIOD", "60"))         # seconds before force-killing
IDLE_INTERVAL = float(os.getenv("WORKERPOOL_IDLE_INTERVAL", "0.05"))     # loop sleep
ESCALATION_THRESHOLD = int(os.getenv("WORKERPOOL_ESCALATION_THRESHOLD", "5"))
MAX_RUN_TIME = float(os.getenv("WORKERPOOL_MAX_RUN_TIME", "3600"))       # example app, seconds

#* --- Logging ---
VERBOSE_LOGGING = _env_bool("WORKERPOOL_VERBOSE")
LOG_BUFFER_FLUSH_INTERVAL = 10
LOG_BATCH_SIZE = 200

# Grafana Loki (for observability)
LOKI_ENABLED = _env_bool("LOKI_ENABLED")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "STARTUP_SPLAY", "GRACE_PERIOD", "IDLE_INTERVAL", "MAX_RUN_TIME",
    "LOG_BUFFER_FLUSH_INTERVAL", "LOG_BATCH_SIZE",
}
