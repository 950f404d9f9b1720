"""
This module contains the default runtime settings for pipeline-manifold.
Values can be overridden through the environment (or a `.env` file) and,
for the keys listed in MODIFIABLE_SETTINGS, through the `settings:` section
of a pipeline configuration file.
"""

import os
import signal
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Process Identity ---
PROCESS_TITLE = os.getenv("PIPELINE_PROCESS_TITLE", "pipeline-manifold")

#* --- Logging ---
LOG_LEVEL = os.getenv("PIPELINE_LOG_LEVEL", "INFO").upper()

#* --- Supervisor Settings ---
SUPERVISOR_SLEEP_INTERVAL = float(os.getenv("PIPELINE_POLL_INTERVAL", "0.1"))  # seconds
DRAIN_TIMEOUT = float(os.getenv("PIPELINE_DRAIN_TIMEOUT", "2"))  # seconds before force-killing
RELAY_CHUNK_SIZE = int(os.getenv("PIPELINE_CHUNK_SIZE", "65536"))  # bytes per read

# A process that died from one of these signals was stopped on purpose.
TERMINATION_SIGNALS = frozenset(
    getattr(signal, name) for name in ("SIGTERM", "SIGKILL") if hasattr(signal, name)
)

#* --- Pipeline Configuration ---
# `input: stdin` (or no input at all) reads the supervisor's own standard input.
STDIN_INPUT_SENTINEL = "stdin"

# Settings that a pipeline configuration file is allowed to override.
MODIFIABLE_SETTINGS = {
    "LOG_LEVEL",
    "SUPERVISOR_SLEEP_INTERVAL",
    "DRAIN_TIMEOUT",
    "RELAY_CHUNK_SIZE",
}
