"""
Debug Log Utility

Provides optional, safe debug output for the measurement engine.
Output is produced only when enabled via environment variables; failures are
swallowed so measurement code never breaks because of logging.

Inputs:
    - annotation_debug(msg) and debug_log(location, message, data) calls
    - Environment: MEASUREMENT_ENGINE_DEBUG (1, true or yes) enables console output
    - Environment: MEASUREMENT_ENGINE_DEBUG_LOG (file path) enables JSON-lines output

Outputs:
    - When enabled: console lines and/or appended JSON lines
    - When disabled or on error: no side effects

Requirements:
    - Standard library only: os, json, time
"""

import json
import os
import time
from typing import Any, Dict, Optional

_TRUTHY = ("1", "true", "yes")


def _console_enabled() -> bool:
    return os.getenv("MEASUREMENT_ENGINE_DEBUG", "0").strip().lower() in _TRUTHY


def _log_path() -> Optional[str]:
    path = os.getenv("MEASUREMENT_ENGINE_DEBUG_LOG", "").strip()
    return path or None


def annotation_debug(msg: str) -> None:
    """Print a debug message to the console only when MEASUREMENT_ENGINE_DEBUG is set."""
    if _console_enabled():
        print(f"[ANNOTATION DEBUG] {msg}")


def debug_log(location: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    """
    Append one JSON log line when MEASUREMENT_ENGINE_DEBUG_LOG names a file.

    Failures (missing dir, permission, disk full, etc.) are caught and ignored.

    Args:
        location: Call site identifier (e.g. "annotation_store.undo").
        message: Short description of the event.
        data: Context dict; values that are not JSON-serializable are stringified.
    """
    path = _log_path()
    if path is None:
        return
    try:
        payload = {
            "location": location,
            "message": message,
            "data": data or {},
            "timestamp": int(time.time() * 1000),
        }
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, default=str) + "\n")
    except Exception:
        pass
