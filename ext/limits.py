"""Picol extension: step limit for runaway scripts.

The core imposes no iteration or recursion limit. This extension lets a script
(or the embedder, through the same command) bound how many further commands
may be dispatched:

- steplimit N arms the limit; the (N+1)th command after it fails with an
  error and disarms the limit again.
- steplimit 0 disarms it.
"""

from __future__ import annotations

import weakref
from typing import Any, List

from extensions import ExtensionAPI, StepContext
from interpreter import PicolRuntimeError, Result, expect_int, ok


PICOL_EXTENSION_NAME = "limits"
PICOL_EXTENSION_API_VERSION = 1


class _LimitState:
    __slots__ = ("limit", "start")

    def __init__(self) -> None:
        self.limit = 0
        self.start = 0


def picol_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=PICOL_EXTENSION_NAME, version="1.0.0")
    states: "weakref.WeakKeyDictionary[Any, _LimitState]" = weakref.WeakKeyDictionary()

    @ext.command("steplimit")
    def _steplimit(interpreter: Any, argv: List[str], _: Any) -> Result:
        if len(argv) != 2:
            raise PicolRuntimeError("Wrong number of args for steplimit")
        limit = expect_int(argv[1], "steplimit")
        if limit < 0:
            raise PicolRuntimeError(f"steplimit expects a non-negative count but got {limit}")
        state = states.setdefault(interpreter, _LimitState())
        state.limit = limit
        state.start = interpreter.logger.next_state_index
        return ok(argv[1])

    @ext.every_n_steps(1)
    def _enforce(interpreter: Any, ctx: StepContext) -> None:
        state = states.get(interpreter)
        if state is None or state.limit == 0:
            return
        if ctx.step_index - state.start >= state.limit:
            limit = state.limit
            state.limit = 0
            raise PicolRuntimeError(f"Step limit of {limit} commands exceeded", location=ctx.location)
