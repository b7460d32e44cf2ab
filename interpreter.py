from __future__ import annotations
import json
import os
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from extensions import CommandHandler, HookRegistry, PicolExtensionError, RuntimeServices, StepContext, build_default_services
from lexer import Lexer, PicolError, SourceLocation, Token, TokenKind


# Number of state log entries kept for tracebacks.
DEFAULT_HISTORY = 10000


class Outcome(IntEnum):
    OK = 0
    ERROR = 1
    RETURN = 2
    BREAK = 3
    CONTINUE = 4


@dataclass(frozen=True)
class Result:
    """Outcome of a script or a single command: a code plus the result string."""

    code: Outcome
    value: str = ""

    @property
    def ok(self) -> bool:
        return self.code is Outcome.OK

    def __iter__(self) -> Iterator[Any]:
        yield self.code
        yield self.value


def ok(value: str = "") -> Result:
    return Result(Outcome.OK, value)


class PicolRuntimeError(PicolError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        command: Optional[str] = None,
        outcome: Outcome = Outcome.ERROR,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.command = command
        self.outcome = outcome
        self.step_index: Optional[int] = None
        # Call stack captured where the error was raised; frames are popped
        # before the error reaches the top level.
        self.frames: List["TracebackFrame"] = []


@dataclass
class CallFrame:
    name: str
    frame_id: str
    source: str
    parent: Optional["CallFrame"] = None
    call_location: Optional[SourceLocation] = None
    variables: Dict[str, str] = field(default_factory=dict)

    def define(self, name: str, value: str) -> None:
        self.variables[name] = value

    def lookup(self, name: str) -> Optional[str]:
        # Frame-local only: procedures never see their caller's variables.
        return self.variables.get(name)

    def snapshot(self) -> Dict[str, str]:
        def _render(value: str) -> str:
            if len(value) > 80:
                return value[:77] + "..."
            return value

        return {k: _render(v) for k, v in self.variables.items()}


@dataclass(frozen=True)
class Procedure:
    params: str
    body: str

    def parameter_names(self) -> List[str]:
        return [name for name in self.params.split(" ") if name]


@dataclass
class Command:
    name: str
    handler: CommandHandler
    privdata: Any = None


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[CallFrame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    @property
    def last_step_index(self) -> Optional[int]:
        if self.entries:
            return self.entries[-1].step_index
        return None


class MathOp(Enum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="

    def apply(self, a: int, b: int) -> int:
        return _MATH_IMPL[self](a, b)


def _truncating_div(a: int, b: int) -> int:
    if b == 0:
        raise PicolRuntimeError("Division by zero", command="/")
    q = abs(a) // abs(b)
    return -q if (a < 0) != (b < 0) else q


_MATH_IMPL: Dict[MathOp, Callable[[int, int], int]] = {
    MathOp.ADD: lambda a, b: a + b,
    MathOp.SUB: lambda a, b: a - b,
    MathOp.MUL: lambda a, b: a * b,
    MathOp.DIV: _truncating_div,
    MathOp.GT: lambda a, b: int(a > b),
    MathOp.GTE: lambda a, b: int(a >= b),
    MathOp.LT: lambda a, b: int(a < b),
    MathOp.LTE: lambda a, b: int(a <= b),
    MathOp.EQ: lambda a, b: int(a == b),
    MathOp.NE: lambda a, b: int(a != b),
}

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")


def expect_int(value: str, command: str) -> int:
    """Parse a command argument as an integer or fail on behalf of command."""
    if _INT_PATTERN.fullmatch(value) is None:
        raise PicolRuntimeError(f"Expected integer but got '{value}'", command=command)
    return int(value)


BuiltinImpl = Callable[["Interpreter", List[str], Any], Result]


@dataclass
class BuiltinCommand:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args or (self.max_args is not None and supplied > self.max_args):
            raise PicolRuntimeError(f"Wrong number of args for {self.name}", command=self.name)

    def __call__(self, interpreter: "Interpreter", argv: List[str], privdata: Any) -> Result:
        self.validate(len(argv) - 1)
        return self.impl(interpreter, argv, privdata)


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinCommand] = {}
        self.privdata: Dict[str, Any] = {}
        for op in MathOp:
            self._register_custom(op.value, 2, 2, self._math, privdata=op)
        self._register_custom("set", 2, 2, self._set)
        self._register_custom("puts", 1, 1, self._puts)
        self._register_custom("if", 2, 4, self._if)
        self._register_custom("while", 2, 2, self._while)
        self._register_custom("break", 0, 0, self._retcode, privdata=Outcome.BREAK)
        self._register_custom("continue", 0, 0, self._retcode, privdata=Outcome.CONTINUE)
        self._register_custom("proc", 3, 3, self._proc)
        self._register_custom("return", 0, 1, self._return)

    def _register_custom(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
        *,
        privdata: Any = None,
    ) -> None:
        self.table[name] = BuiltinCommand(name=name, min_args=min_args, max_args=max_args, impl=impl)
        self.privdata[name] = privdata

    def install(self, interpreter: "Interpreter") -> None:
        for name, builtin in self.table.items():
            result = interpreter.register_command(name, builtin, self.privdata[name])
            if not result.ok:
                raise PicolExtensionError(result.value)

    def _math(self, _: "Interpreter", argv: List[str], op: MathOp) -> Result:
        a = expect_int(argv[1], op.value)
        b = expect_int(argv[2], op.value)
        return ok(str(op.apply(a, b)))

    def _set(self, interpreter: "Interpreter", argv: List[str], _: Any) -> Result:
        interpreter.define_variable(argv[1], argv[2])
        return ok(argv[2])

    def _puts(self, interpreter: "Interpreter", argv: List[str], _: Any) -> Result:
        interpreter.output_sink(argv[1] + "\n")
        return ok(interpreter.result)

    def _if(self, interpreter: "Interpreter", argv: List[str], _: Any) -> Result:
        if len(argv) == 4:
            raise PicolRuntimeError("Wrong number of args for if", command="if")
        if len(argv) == 5 and argv[3] != "else":
            raise PicolRuntimeError(f"Expected 'else' but got '{argv[3]}'", command="if")
        condition = interpreter.evaluate(argv[1])
        if not condition.ok:
            return condition
        if expect_int(condition.value, "if") != 0:
            return interpreter.evaluate(argv[2])
        if len(argv) == 5:
            return interpreter.evaluate(argv[4])
        return ok()

    def _while(self, interpreter: "Interpreter", argv: List[str], _: Any) -> Result:
        while True:
            condition = interpreter.evaluate(argv[1])
            if not condition.ok:
                return condition
            if expect_int(condition.value, "while") == 0:
                return ok()
            body = interpreter.evaluate(argv[2])
            if body.code is Outcome.BREAK:
                return ok()
            if body.code not in (Outcome.OK, Outcome.CONTINUE):
                return body

    def _retcode(self, _: "Interpreter", argv: List[str], code: Outcome) -> Result:
        return Result(code)

    def _proc(self, interpreter: "Interpreter", argv: List[str], _: Any) -> Result:
        return interpreter.register_command(argv[1], Interpreter.call_procedure, Procedure(params=argv[2], body=argv[3]))

    def _return(self, _: "Interpreter", argv: List[str], __: Any) -> Result:
        return Result(Outcome.RETURN, argv[1] if len(argv) == 2 else "")


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.source = source
        self.filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.commands: Dict[str, Command] = {}
        self.logger = StateLogger(verbose=verbose, history=history)
        self.logger.record(frame=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})
        self.frame_counter = 0
        self.call_stack: List[CallFrame] = [self._new_frame("<top-level>", self.filename, None, None)]
        self.result = ""
        self.current_location: Optional[SourceLocation] = None
        self.last_error: Optional[PicolRuntimeError] = None

        self.builtins = Builtins()
        self.builtins.install(self)
        # Extension commands are added after the core set and cannot replace it.
        for name, handler, privdata, ext_name in self.services.commands:
            if name in self.commands:
                raise PicolExtensionError(f"Extension '{ext_name}' cannot override existing command '{name}'")
            self.register_command(name, handler, privdata)

    @property
    def current_frame(self) -> CallFrame:
        return self.call_stack[-1]

    # ---- scope / command model ----
    def define_variable(self, name: str, value: str) -> None:
        self.current_frame.define(name, value)

    def lookup_variable(self, name: str) -> Optional[str]:
        return self.current_frame.lookup(name)

    def get_command(self, name: str) -> Optional[Command]:
        return self.commands.get(name)

    def register_command(self, name: str, handler: CommandHandler, privdata: Any = None) -> Result:
        if name in self.commands:
            return self._fail(f"Command '{name}' already defined", command=name)
        self.commands[name] = Command(name=name, handler=handler, privdata=privdata)
        return ok()

    def call_procedure(self, argv: List[str], procedure: Procedure) -> Result:
        """Run a user procedure in a fresh frame.

        Arguments are bound positionally and the frame is popped whatever the
        body's outcome. RETURN becomes OK for the caller; BREAK and CONTINUE may
        not leave the procedure and are reported as errors.
        """
        name = argv[0]
        call_location = self.current_location
        frame = self._new_frame(name, f"<proc {name}>", self.current_frame, call_location)
        self.call_stack.append(frame)
        try:
            params = procedure.parameter_names()
            if len(params) != len(argv) - 1:
                return self._fail(f"Proc '{name}' called with wrong arg num", command=name)
            for param, value in zip(params, argv[1:]):
                frame.define(param, value)
            result = self.evaluate(procedure.body)
            if result.code is Outcome.RETURN:
                return ok(result.value)
            if result.code in (Outcome.BREAK, Outcome.CONTINUE):
                return self._fail(f'invoked "{result.code.name.lower()}" outside of a loop', command=name)
            return result
        finally:
            self._drop_frame()
            self.current_location = call_location

    # ---- evaluation ----
    def run(self, source: Optional[str] = None) -> Result:
        if source is not None:
            self.source = source
        self.last_error = None
        self._emit_event("program_start", self, self.source)
        try:
            result = self.evaluate(self.source)
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            raise self.internal_error(exc) from exc
        if result.ok:
            self._emit_event("program_end", self, result)
            return result
        error = self._escaped_error(result)
        self._emit_event("on_error", self, error)
        raise error

    def internal_error(self, exc: BaseException) -> PicolRuntimeError:
        """Wrap a Python-level exception (RecursionError included) for tracebacks."""
        loc = None
        if self.logger.entries:
            loc = self.logger.entries[-1].source_location
        wrapped = PicolRuntimeError(f"Internal interpreter error: {exc}", location=loc, command="internal")
        wrapped.step_index = self.logger.last_step_index
        return wrapped

    def evaluate(self, text: str) -> Result:
        return self._evaluate(text, 1, 1)

    def _evaluate(self, text: str, line: int, column: int) -> Result:
        self.result = ""
        lexer = Lexer(text, self.current_frame.source, line=line, column=column)
        argv: List[str] = []
        first: Optional[Token] = None
        prev = TokenKind.END_OF_LINE
        for token in lexer:
            kind = token.kind
            if kind is TokenKind.END_OF_INPUT:
                break
            if kind is TokenKind.SEPARATOR:
                prev = kind
                continue
            if kind is TokenKind.END_OF_LINE:
                prev = kind
                if argv:
                    result = self._dispatch(argv, self._location(first, argv))
                    if not result.ok:
                        return result
                    argv = []
                continue
            if kind is TokenKind.VARIABLE:
                value = self.current_frame.lookup(token.text)
                if value is None:
                    return self._fail(f"No such variable '{token.text}'", location=self._location(token, [f"${token.text}"]))
                word = value
            elif kind is TokenKind.COMMAND:
                result = self._evaluate(token.text, token.line, token.column + 1)
                if not result.ok:
                    return result
                word = result.value
            else:
                word = token.text
            if prev is TokenKind.SEPARATOR or prev is TokenKind.END_OF_LINE:
                if not argv:
                    first = token
                argv.append(word)
            else:
                # Interpolation: adjacent tokens form a single word.
                argv[-1] += word
            prev = kind
        return ok(self.result)

    def _dispatch(self, argv: List[str], location: SourceLocation) -> Result:
        command = self.commands.get(argv[0])
        if command is None:
            return self._fail(f"No such command '{argv[0]}'", location=location)
        self.current_location = location
        try:
            self._log_step(rule=command.name, location=location, argv=argv)
            self._emit_event("before_command", self, argv)
            result = command.handler(self, argv, command.privdata)
            self.result = result.value
            self._emit_event("after_command", self, argv, result)
        except PicolRuntimeError as error:
            if error.location is None:
                error.location = location
            if error.command is None:
                error.command = command.name
            return self._fail_with(error)
        return result

    def _location(self, token: Optional[Token], argv: List[str]) -> SourceLocation:
        line = token.line if token else 1
        column = token.column if token else 1
        return SourceLocation(file=self.current_frame.source, line=line, column=column, statement=" ".join(argv))

    def _fail(self, message: str, *, location: Optional[SourceLocation] = None, command: Optional[str] = None) -> Result:
        if location is None:
            location = self.current_location
        return self._fail_with(PicolRuntimeError(message, location=location, command=command))

    def _fail_with(self, error: PicolRuntimeError) -> Result:
        error.frames = TracebackFormatter(self).build_frames()
        error.step_index = self.logger.last_step_index
        self.last_error = error
        self.result = error.message
        return Result(Outcome.ERROR, error.message)

    def _escaped_error(self, result: Result) -> PicolRuntimeError:
        if result.code is Outcome.ERROR:
            error = self.last_error
            if error is None or error.message != result.value:
                error = PicolRuntimeError(result.value)
        elif result.code is Outcome.RETURN:
            error = PicolRuntimeError('invoked "return" outside of a proc', command="return")
        else:
            name = result.code.name.lower()
            error = PicolRuntimeError(f'invoked "{name}" outside of a loop', command=name)
        error.outcome = result.code
        if error.step_index is None:
            error.step_index = self.logger.last_step_index
        return error

    def _new_frame(
        self,
        name: str,
        source: str,
        parent: Optional[CallFrame],
        call_location: Optional[SourceLocation],
    ) -> CallFrame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return CallFrame(name=name, frame_id=frame_id, source=source, parent=parent, call_location=call_location)

    def _drop_frame(self) -> None:
        frame = self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (PicolRuntimeError, RecursionError):
            raise
        except Exception as exc:
            loc = None
            if self.logger.entries:
                loc = self.logger.entries[-1].source_location
            raise PicolRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=loc,
                command="ext",
            )

    def _log_step(self, *, rule: str, location: Optional[SourceLocation], argv: List[str]) -> None:
        frame = self.current_frame
        env_snapshot = frame.snapshot() if self.verbose else None
        statement = location.statement if location else None
        entry = self.logger.record(
            frame=frame,
            location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record={"rule": rule},
        )

        # Run extension step rules (every N steps) after recording.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, location=location, argv=list(argv)),
            )
        except (PicolRuntimeError, RecursionError):
            raise
        except Exception as exc:
            raise PicolRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                command="ext",
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def _frames_for(self, error: PicolRuntimeError) -> List[TracebackFrame]:
        return error.frames or self.build_frames()

    def format_text(self, error: PicolRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self._frames_for(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        command = error.command or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (command: {command})")
        return "\n".join(lines)

    def to_json(self, error: PicolRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self._frames_for(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
                if frame.state_entry.rewrite_record is not None:
                    entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "outcome": error.outcome.name,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
