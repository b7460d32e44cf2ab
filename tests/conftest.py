"""Shared fixtures: an interpreter whose puts output is captured in memory."""

from pathlib import Path
from typing import List

import pytest

from interpreter import Interpreter


EXT_DIR = Path(__file__).resolve().parent.parent / "ext"


class OutputCapture:
    def __init__(self) -> None:
        self.chunks: List[str] = []

    def __call__(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@pytest.fixture
def output() -> OutputCapture:
    return OutputCapture()


@pytest.fixture
def interp(output: OutputCapture) -> Interpreter:
    return Interpreter(output_sink=output)


@pytest.fixture
def limits_path() -> str:
    return str(EXT_DIR / "limits.py")
