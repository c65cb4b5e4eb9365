from __future__ import annotations

import sys
from pathlib import Path

import pytest

FAKE_AGENT = Path(__file__).with_name("fake_agent.py")


@pytest.fixture
def agent_command() -> list[str]:
    """argv prefix that runs the scripted fake agent."""
    return [sys.executable, str(FAKE_AGENT)]
