import logging
import textwrap

import pytest

from call_selector import DefaultCallSelector
from conversion_config import DEFAULT_UNSUPPORTED_CALLS
from target_registry import get_target


@pytest.fixture(autouse=True)
def _isolate_root_logger():
    """Drop handlers installed by main.setup_logging during a test."""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            if isinstance(handler, logging.FileHandler):
                handler.close()
    root.setLevel(level)


@pytest.fixture
def target():
    return get_target("linux", "amd64")


@pytest.fixture
def selector(target):
    return DefaultCallSelector(target, DEFAULT_UNSUPPORTED_CALLS)


@pytest.fixture
def write_trace(tmp_path):
    """Write dedented strace text to a file under tmp_path and return its path."""
    def _write(text, name="trace"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text).lstrip("\n"))
        return path
    return _write
