from __future__ import annotations

from unittest.mock import patch

from rig.engine.file_tracker import FileTracker


def _tool(name: str, **args) -> dict:
    return {"type": "tool_execution_start", "toolName": name, "args": args}


def test_tracks_read_edit_and_write() -> None:
    tracker = FileTracker()
    with patch("rig.engine.file_tracker.time.time", side_effect=[1.0, 2.0, 3.0, 4.0]):
        assert tracker.process_event(_tool("read", path="/a.py")).action == "read"
        assert tracker.process_event(_tool("write", path="/b.py")).action == "new"
        assert tracker.process_event(_tool("edit", path="/c.py")).action == "edit"
        tracker.process_event(_tool("edit", path="/a.py"))

    files = tracker.get_files()
    assert [(f.path, f.action) for f in files] == [("/a.py", "edit"), ("/c.py", "edit"), ("/b.py", "new")]
    assert files[0].to_json() == {"path": "/a.py", "action": "edit", "timestamp": 4000.0}


def test_ignores_other_events_and_tools() -> None:
    tracker = FileTracker()
    assert tracker.process_event({"type": "tool_execution_end", "toolName": "read", "args": {"path": "/a"}}) is None
    assert tracker.process_event(_tool("bash", command="ls")) is None
    assert tracker.process_event(_tool("read")) is None
    assert tracker.process_event({"type": "tool_execution_start", "toolName": "read", "args": "x"}) is None
    assert tracker.get_files() == []


def test_clear() -> None:
    tracker = FileTracker()
    tracker.process_event(_tool("read", path="/a"))
    tracker.clear()
    assert tracker.get_files() == []
