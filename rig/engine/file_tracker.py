"""Per-bridge tracker of files touched by agent tools.

Reads ``tool_execution_start`` events and remembers which paths were
read, edited or newly written, most recent first. Bash commands are
commands, not file operations, and are not tracked.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any

_TOOL_ACTIONS: dict[str, str] = {
    "read": "read",
    "edit": "edit",
    "write": "new",
}


@dataclass
class TrackedFile:
    path: str
    action: str  # "read", "edit" or "new"
    timestamp: float  # epoch milliseconds

    def to_json(self) -> dict[str, Any]:
        return asdict(self)


class FileTracker:
    """Tracks the latest action per path for one bridge."""

    def __init__(self) -> None:
        self._files: dict[str, TrackedFile] = {}

    def process_event(self, event: dict[str, Any]) -> TrackedFile | None:
        """Record the file a tool call touches; returns it, or None."""
        if event.get("type") != "tool_execution_start":
            return None
        tool_name = event.get("toolName")
        args = event.get("args")
        if not isinstance(tool_name, str) or not isinstance(args, dict):
            return None
        action = _TOOL_ACTIONS.get(tool_name)
        path = args.get("path")
        if action is None or not isinstance(path, str) or not path:
            return None
        tracked = TrackedFile(path=path, action=action, timestamp=time.time() * 1000)
        self._files[path] = tracked
        return tracked

    def get_files(self) -> list[TrackedFile]:
        return sorted(self._files.values(), key=lambda f: f.timestamp, reverse=True)

    def clear(self) -> None:
        self._files.clear()
