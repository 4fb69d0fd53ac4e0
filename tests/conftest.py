from __future__ import annotations

import io

import pytest

from flowci.ui.console import Console, set_console


class CapturedConsole(Console):
    """Console that writes into string buffers instead of the terminal."""

    def __init__(self, debug: bool = False):
        self.out = io.StringIO()
        self.err = io.StringIO()
        super().__init__(debug=debug, stream=self.out, err_stream=self.err)

    @property
    def stdout(self) -> str:
        return self.out.getvalue()

    @property
    def stderr(self) -> str:
        return self.err.getvalue()


@pytest.fixture(autouse=True)
def console():
    c = CapturedConsole()
    set_console(c)
    yield c
    set_console(None)
