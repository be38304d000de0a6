"""
Test configuration and fixtures.
"""

import pytest

from flowci.ui.console import Console, set_console


@pytest.fixture
def workspace(tmp_path):
    """Empty job workspace."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def console():
    """Console installed as the global instance; output goes to capsys."""
    c = Console()
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def quiet_console():
    c = Console(quiet=True)
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def write_workflow(tmp_path):
    """Write YAML text to a workflow file and return its path."""
    def _write(text, name="flowci.yml"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write
