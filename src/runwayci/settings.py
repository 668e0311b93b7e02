from __future__ import annotations
import os

DATABASE_URL = os.environ.get("RUNWAY_DATABASE_URL", "sqlite:///.runway/runs.db")
WORKSPACE_ROOT = os.environ.get("RUNWAY_WORKSPACE", ".runway/work")
STEP_TIMEOUT = float(os.environ.get("RUNWAY_STEP_TIMEOUT", "3600"))
KILL_GRACE_SECONDS = float(os.environ.get("RUNWAY_KILL_GRACE", "5"))
MAX_WORKERS = int(os.environ["RUNWAY_MAX_WORKERS"]) if os.environ.get("RUNWAY_MAX_WORKERS") else None
RUNNER_CLASSES = tuple(
    c.strip() for c in os.environ.get("RUNWAY_RUNNER_CLASSES", "local,self-hosted").split(",") if c.strip()
)
SECRET_ENV_PREFIX = os.environ.get("RUNWAY_SECRET_PREFIX", "RUNWAY_SECRET_")
KEEP_WORKSPACES = os.environ.get("RUNWAY_KEEP_WORKSPACES", "0").lower() in ("1", "true", "yes")
# stored characters per step stream; capture holds at most twice this in memory
MAX_OUTPUT_CHARS = int(os.environ.get("RUNWAY_MAX_OUTPUT", "65536"))
