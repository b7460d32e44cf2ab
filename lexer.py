from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterator


class PicolError(Exception):
    """Base class for interpreter errors."""


class PicolParseError(PicolError):
    """Raised when front-end input cannot be handed to the evaluator."""


class TokenKind(Enum):
    SEPARATOR = "SEP"
    END_OF_LINE = "EOL"
    COMMAND = "CMD"
    VARIABLE = "VAR"
    LITERAL = "STR"
    END_OF_INPUT = "EOF"


@dataclass
class Token:
    kind: TokenKind
    text: str
    line: int
    column: int
    # Brace-quoted text and the lone "$" are raw; plain and quoted words keep
    # their backslashes and are not.
    raw: bool = False


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


WHITESPACE = " \t\r"
LINE_BREAKS = "\n;"


def _is_name_char(ch: str) -> bool:
    return ("a" <= ch <= "z") or ("A" <= ch <= "Z") or ("0" <= ch <= "9") or ch == "_"


class Lexer:
    def __init__(self, text: str, filename: str = "<string>", *, line: int = 1, column: int = 1) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = line
        self.column = column
        self.in_quote = False
        self.last_kind = TokenKind.END_OF_LINE
        self.last_raw = False
        # Set when a bracket or brace scan ran out of input.
        self.truncated = False

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            yield token
            if token.kind is TokenKind.END_OF_INPUT:
                return

    def next_token(self) -> Token:
        text = self.text
        while True:
            if self._eof:
                if self.last_kind in (TokenKind.END_OF_LINE, TokenKind.END_OF_INPUT):
                    return self._emit(Token(TokenKind.END_OF_INPUT, "", self.line, self.column))
                return self._emit(Token(TokenKind.END_OF_LINE, "", self.line, self.column))
            ch = text[self.index]
            if ch in WHITESPACE:
                if self.in_quote:
                    return self._emit(self._consume_word())
                return self._emit(self._consume_run(TokenKind.SEPARATOR, WHITESPACE))
            if ch in LINE_BREAKS:
                if self.in_quote:
                    return self._emit(self._consume_word())
                return self._emit(self._consume_run(TokenKind.END_OF_LINE, WHITESPACE + LINE_BREAKS))
            if ch == "[":
                return self._emit(self._consume_command())
            if ch == "$":
                return self._emit(self._consume_variable())
            if ch == "#" and self.last_kind is TokenKind.END_OF_LINE:
                self._consume_comment()
                continue
            return self._emit(self._consume_word())

    def _emit(self, token: Token) -> Token:
        self.last_kind = token.kind
        self.last_raw = token.raw
        return token

    def _starts_word(self) -> bool:
        if self.in_quote:
            return False
        if self.last_kind in (TokenKind.SEPARATOR, TokenKind.END_OF_LINE):
            return True
        return self.last_kind is TokenKind.LITERAL and self.last_raw

    def _consume_run(self, kind: TokenKind, chars: str) -> Token:
        line, col = self.line, self.column
        start = self.index
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] in chars:
            _advance()
        return Token(kind, text[start:self.index], line, col)

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_command(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '['
        start = self.index
        text = self.text
        n = len(text)
        level, brace_level = 1, 0
        while self.index < n:
            ch = text[self.index]
            if ch == "[" and brace_level == 0:
                level += 1
            elif ch == "]" and brace_level == 0:
                level -= 1
                if level == 0:
                    break
            elif ch == "\\":
                if self.index + 1 < n:
                    self._advance()
            elif ch == "{":
                brace_level += 1
            elif ch == "}":
                if brace_level != 0:
                    brace_level -= 1
            self._advance()
        token = Token(TokenKind.COMMAND, text[start:self.index], line, col)
        if not self._eof:
            self._advance()  # consume ']'
        else:
            self.truncated = True
        return token

    def _consume_variable(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '$'
        start = self.index
        text = self.text
        n = len(text)
        while self.index < n and _is_name_char(text[self.index]):
            self._advance()
        if self.index == start:
            return Token(TokenKind.LITERAL, "$", line, col, raw=True)
        return Token(TokenKind.VARIABLE, text[start:self.index], line, col)

    def _consume_brace(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '{'
        start = self.index
        text = self.text
        n = len(text)
        level = 1
        while self.index < n:
            ch = text[self.index]
            if ch == "\\":
                if n - self.index >= 2:
                    self._advance()
            elif ch == "}":
                level -= 1
                if level == 0:
                    token = Token(TokenKind.LITERAL, text[start:self.index], line, col, raw=True)
                    self._advance()  # consume '}'
                    return token
            elif ch == "{":
                level += 1
            self._advance()
        self.truncated = True
        return Token(TokenKind.LITERAL, text[start:self.index], line, col, raw=True)

    def _consume_word(self) -> Token:
        if self._starts_word():
            opening = self._peek()
            if opening == "{":
                return self._consume_brace()
            if opening == '"':
                self.in_quote = True
                self._advance()
        line, col = self.line, self.column
        start = self.index
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch == "\\":
                if n - self.index >= 2:
                    _advance()
            elif ch == "$" or ch == "[":
                return Token(TokenKind.LITERAL, text[start:self.index], line, col)
            elif ch in WHITESPACE or ch in LINE_BREAKS:
                if not self.in_quote:
                    return Token(TokenKind.LITERAL, text[start:self.index], line, col)
            elif ch == '"':
                if self.in_quote:
                    token = Token(TokenKind.LITERAL, text[start:self.index], line, col)
                    _advance()  # consume closing quote
                    self.in_quote = False
                    return token
            _advance()
        return Token(TokenKind.LITERAL, text[start:self.index], line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def script_is_complete(text: str) -> bool:
    """Report whether text has no unterminated brace, bracket or quote."""
    lexer = Lexer(text)
    for _ in lexer:
        pass
    return not (lexer.truncated or lexer.in_quote)
