#!/usr/bin/env python3
import os
import shlex
import subprocess
import sys

# Local dev runner for the FastAPI service.
#
# - Serves on PORT (default 8000) with auto-reload
# - Defaults to the in-memory row store unless MEMORY_BACKEND is set
#
# Usage: python scripts/dev_run.py
# Stop with Ctrl+C.

PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")

env = os.environ.copy()
env.setdefault("MEMORY_BACKEND", "memory")

cmd = f"uvicorn coach_pipeline.main:app --host 0.0.0.0 --port {PORT} --reload --log-level {shlex.quote(LOG_LEVEL.lower())}"

print(f"[dev_run] Starting backend: {cmd}")
try:
    sys.exit(subprocess.call(shlex.split(cmd), env=env))
except KeyboardInterrupt:
    print("[dev_run] Stopped")
