"""Listing and reading the agent's JSONL session files.

The agent writes each session to
``<sessions-dir>/<encoded-cwd>/<name>.jsonl``: a ``session`` header line
followed by one entry per line. Only the fields the board needs are
read; malformed files and lines are skipped, never raised.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rig.engine.models import ProjectRef, extract_text, project_name_from_cwd

logger = logging.getLogger(__name__)


def encode_cwd(cwd: str) -> str:
    """Directory name the agent uses for sessions started in *cwd*."""
    stripped = re.sub(r"^[/\\]", "", cwd)
    return "--" + re.sub(r"[/\\:]", "-", stripped) + "--"


def _parse_timestamp_ms(value: Any) -> float | None:
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp() * 1000
    return None


def iso_from_ms(ms: float) -> str:
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SessionInfo:
    path: str
    id: str
    cwd: str
    project_name: str
    first_message: str
    created_ms: float
    modified_ms: float
    message_count: int = 0
    name: str | None = None
    last_model: str | None = None
    last_provider: str | None = None
    thinking_level: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "id": self.id,
            "cwd": self.cwd,
            "projectName": self.project_name,
            "name": self.name,
            "firstMessage": self.first_message,
            "created": iso_from_ms(self.created_ms),
            "modified": iso_from_ms(self.modified_ms),
            "messageCount": self.message_count,
            "lastModel": self.last_model,
            "lastProvider": self.last_provider,
            "thinkingLevel": self.thinking_level,
        }


def _read_lines(path: Path) -> list[str] | None:
    try:
        return path.read_text(encoding="utf-8").strip().split("\n")
    except (OSError, UnicodeDecodeError):
        return None


def parse_session_file(path: Path) -> SessionInfo | None:
    """Summarize one session file, or None if it has no valid header."""
    lines = _read_lines(path)
    if not lines:
        return None
    try:
        header = json.loads(lines[0])
    except ValueError:
        return None
    if not isinstance(header, dict) or header.get("type") != "session" or not header.get("id"):
        return None
    try:
        mtime_ms = path.stat().st_mtime * 1000
    except OSError:
        return None

    message_count = 0
    first_message = ""
    name = last_model = last_provider = thinking_level = None
    last_activity: float | None = None

    for line in lines[1:]:
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if not isinstance(entry, dict):
            continue
        entry_type = entry.get("type")
        if entry_type == "session_info" and isinstance(entry.get("name"), str) and entry["name"].strip():
            name = entry["name"].strip()
        elif entry_type == "model_change":
            last_provider = entry.get("provider")
            last_model = entry.get("modelId")
        elif entry_type == "thinking_level_change":
            thinking_level = entry.get("thinkingLevel")
        elif entry_type == "message":
            message_count += 1
            msg = entry.get("message")
            if not isinstance(msg, dict):
                continue
            if msg.get("role") == "assistant":
                last_provider = msg.get("provider") or last_provider
                last_model = msg.get("model") or last_model
            if not first_message and msg.get("role") == "user":
                first_message = extract_text(msg.get("content"), " ")[:200]
            ts = msg.get("timestamp")
            ts_ms = ts if isinstance(ts, (int, float)) else _parse_timestamp_ms(entry.get("timestamp"))
            if ts_ms and ts_ms > 0:
                last_activity = max(last_activity or 0.0, float(ts_ms))

    created = _parse_timestamp_ms(header.get("timestamp"))
    if last_activity:
        modified = last_activity
    else:
        modified = created if created is not None else mtime_ms
    cwd = header.get("cwd") or ""
    return SessionInfo(
        path=str(path),
        id=str(header["id"]),
        cwd=cwd,
        project_name=project_name_from_cwd(cwd),
        first_message=first_message or "(no messages)",
        created_ms=created if created is not None else mtime_ms,
        modified_ms=modified,
        message_count=message_count,
        name=name,
        last_model=last_model,
        last_provider=last_provider,
        thinking_level=thinking_level,
    )


class SessionStore:
    """Read-only access to one agent sessions directory."""

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = sessions_dir

    def _project_dirs(self) -> list[Path]:
        try:
            return sorted(p for p in self.sessions_dir.iterdir() if p.is_dir())
        except OSError:
            return []

    @staticmethod
    def _sessions_in(directory: Path) -> list[SessionInfo]:
        try:
            files = sorted(directory.glob("*.jsonl"))
        except OSError:
            return []
        return [info for info in map(parse_session_file, files) if info is not None]

    def list_all_sessions(self) -> list[SessionInfo]:
        """Every session across all projects, newest activity first."""
        sessions: list[SessionInfo] = []
        for directory in self._project_dirs():
            sessions.extend(self._sessions_in(directory))
        sessions.sort(key=lambda s: s.modified_ms, reverse=True)
        return sessions

    def list_sessions_for_cwd(self, cwd: str) -> list[SessionInfo]:
        directory = self.sessions_dir / encode_cwd(cwd)
        if not directory.is_dir():
            return []
        sessions = self._sessions_in(directory)
        sessions.sort(key=lambda s: s.modified_ms, reverse=True)
        return sessions

    def discover_projects(self) -> list[ProjectRef]:
        """Projects seen in session history, from one header per directory."""
        seen: dict[str, str] = {}
        for directory in self._project_dirs():
            first = next(iter(sorted(directory.glob("*.jsonl"))), None)
            if first is None:
                continue
            try:
                with first.open(encoding="utf-8") as f:
                    header = json.loads(f.readline())
            except (OSError, ValueError):
                continue
            cwd = header.get("cwd") if isinstance(header, dict) else None
            if cwd and header.get("type") == "session" and cwd not in seen:
                seen[cwd] = project_name_from_cwd(cwd)
        projects = [ProjectRef(path=path, name=name) for path, name in seen.items()]
        projects.sort(key=lambda p: p.name.lower())
        return projects


def read_session_entries(path: str | Path) -> list[Any]:
    """All parseable lines of a session file; empty on any read error."""
    lines = _read_lines(Path(path))
    if lines is None:
        return []
    entries = []
    for line in lines:
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except ValueError:
            continue
    return entries
