"""
Pytest fixtures shared by the preexec test-suite.
"""
import textwrap

import pytest

from preexec.layout import DataLayout
from preexec.llparse import parse_module
from preexec.sandbox import SandboxSession


@pytest.fixture
def layout():
    return DataLayout()


@pytest.fixture
def session(layout):
    sess = SandboxSession(layout)
    yield sess
    sess.release()


@pytest.fixture
def parse():
    """Parse dedented IR text into a module."""

    def _parse(text):
        return parse_module(textwrap.dedent(text).strip() + "\n")

    return _parse
