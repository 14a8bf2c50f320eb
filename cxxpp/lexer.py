# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes that define:
- Tokens from lexing C/C++ source
- The keyword and punctuator tables used for classification
- The Lexer that produces tokens from normalized source text
"""
from __future__ import annotations

import copy
import dataclasses
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from cxxpp.file_source import SourceText, normalize

log = logging.getLogger(__name__)


class TokenKind(Enum):
    KEYWORD = "keyword"
    PUNCTUATOR = "punctuator"
    IDENTIFIER = "identifier"
    NUMBER = "numeric-literal"
    STRING = "string-literal"
    CHARACTER = "character-literal"
    COMMENT = "comment"
    WHITESPACE = "whitespace"
    UNKNOWN = "unknown"
    EOF = "end-of-file"


TRIVIA = frozenset({TokenKind.COMMENT, TokenKind.WHITESPACE})

CPP_KEYWORDS = frozenset(
    [
        "alignas",
        "alignof",
        "asm",
        "auto",
        "bool",
        "break",
        "case",
        "catch",
        "char",
        "char8_t",
        "char16_t",
        "char32_t",
        "class",
        "concept",
        "const",
        "consteval",
        "constexpr",
        "constinit",
        "const_cast",
        "continue",
        "co_await",
        "co_return",
        "co_yield",
        "decltype",
        "default",
        "delete",
        "do",
        "double",
        "dynamic_cast",
        "else",
        "enum",
        "explicit",
        "export",
        "extern",
        "false",
        "float",
        "for",
        "friend",
        "goto",
        "if",
        "inline",
        "int",
        "long",
        "mutable",
        "namespace",
        "new",
        "noexcept",
        "nullptr",
        "operator",
        "private",
        "protected",
        "public",
        "register",
        "reinterpret_cast",
        "requires",
        "return",
        "short",
        "signed",
        "sizeof",
        "static",
        "static_assert",
        "static_cast",
        "struct",
        "switch",
        "template",
        "this",
        "thread_local",
        "throw",
        "true",
        "try",
        "typedef",
        "typeid",
        "typename",
        "union",
        "unsigned",
        "using",
        "virtual",
        "void",
        "volatile",
        "wchar_t",
        "while",
        # Alternative operator representations
        "and",
        "and_eq",
        "bitand",
        "bitor",
        "compl",
        "not",
        "not_eq",
        "or",
        "or_eq",
        "xor",
        "xor_eq",
    ],
)

C_KEYWORDS = frozenset(
    [
        "auto",
        "break",
        "case",
        "char",
        "const",
        "continue",
        "default",
        "do",
        "double",
        "else",
        "enum",
        "extern",
        "float",
        "for",
        "goto",
        "if",
        "inline",
        "int",
        "long",
        "register",
        "restrict",
        "return",
        "short",
        "signed",
        "sizeof",
        "static",
        "struct",
        "switch",
        "typedef",
        "union",
        "unsigned",
        "void",
        "volatile",
        "while",
        "_Alignas",
        "_Alignof",
        "_Atomic",
        "_Bool",
        "_Complex",
        "_Generic",
        "_Imaginary",
        "_Noreturn",
        "_Static_assert",
        "_Thread_local",
    ],
)

# Punctuator spellings and their names.
PUNCTUATORS = {
    "{": "CURLBR_LEFT",
    "}": "CURLBR_RIGHT",
    "[": "SQBR_LEFT",
    "]": "SQBR_RIGHT",
    "(": "BR_LEFT",
    ")": "BR_RIGHT",
    "#": "HASH",
    "##": "HASHHASH",
    ";": "SEMICOLON",
    ":": "COLON",
    "...": "ELLIPSIS",
    "?": "QUEST",
    "::": "DOUBLECOLON",
    ".": "DOT",
    ".*": "DOT_STAR",
    "->": "ARROW",
    "->*": "ARROW_STAR",
    "~": "BW_NOT",
    "!": "NOT",
    "+": "ADD",
    "-": "SUB",
    "*": "MUL",
    "/": "DIV",
    "%": "MODULO",
    "^": "BW_XOR",
    "&": "BW_AND",
    "|": "BW_OR",
    "=": "ASSIGN",
    "+=": "ADD_ASSIGN",
    "-=": "SUB_ASSIGN",
    "*=": "MUL_ASSIGN",
    "/=": "DIV_ASSIGN",
    "%=": "MODULO_ASSIGN",
    "^=": "BW_XOR_ASSIGN",
    "&=": "BW_AND_ASSIGN",
    "|=": "BW_OR_ASSIGN",
    "<<=": "BW_LSHIFT_ASSIGN",
    ">>=": "BW_RSHIFT_ASSIGN",
    "==": "EQ",
    "!=": "NOT_EQ",
    "<": "LT",
    ">": "GT",
    "<=": "LT_EQ",
    ">=": "GT_EQ",
    "<=>": "SPACESHIP",
    "&&": "AND",
    "||": "OR",
    "<<": "BW_LSHIFT",
    ">>": "BW_RSHIFT",
    "++": "INCR",
    "--": "DECR",
    ",": "COMMA",
    "<:": "DIGRAPH_SQBR_LEFT",
    ":>": "DIGRAPH_SQBR_RIGHT",
    "<%": "DIGRAPH_CURLBR_LEFT",
    "%>": "DIGRAPH_CURLBR_RIGHT",
    "%:": "DIGRAPH_HASH",
    "%:%:": "DIGRAPH_HASHHASH",
}

HASH_SPELLINGS = frozenset(["#", "%:"])
HASHHASH_SPELLINGS = frozenset(["##", "%:%:"])

_ENCODING_PREFIXES = ["u8", "u", "U", "L", ""]
_RAW_PREFIXES = ["u8R", "uR", "UR", "LR", "R"]
_LITERAL_STARTS = frozenset("uULR'\"")

_number_re = re.compile(
    r"""
    (?:
        (?:                                       # integer literal
            0[xX][0-9a-fA-F](?:'?[0-9a-fA-F])*
          | 0[bB][01](?:'?[01])*
          | 0(?:'?[0-7])*
          | [1-9](?:'?[0-9])*
        )
        (?:[uU](?:ll|LL|[lLzZ])?|(?:ll|LL|[lLzZ])[uU]?|_\w*)?
      |
        (?:                                       # floating literal
            (?:[0-9](?:'?[0-9])*)?\.[0-9](?:'?[0-9])*
                (?:[eE][+-]?[0-9](?:'?[0-9])*)?
          | [0-9](?:'?[0-9])*\.(?:[eE][+-]?[0-9](?:'?[0-9])*)?
          | [0-9](?:'?[0-9])*[eE][+-]?[0-9](?:'?[0-9])*
          | 0[xX](?:[0-9a-fA-F](?:'?[0-9a-fA-F])*)?\.?
                (?:[0-9a-fA-F](?:'?[0-9a-fA-F])*)?[pP][+-]?[0-9](?:'?[0-9])*
        )
        (?:[fFlL]|f16|f32|f64|f128|bf16|F16|F32|F64|F128|BF16|_\w*)?
    )
    """,
    re.VERBOSE,
)
_character_re = re.compile(r"(?:u8|u|U|L)?'((?:[^'\\\n]|\\.)*)'(?:_\w*)?")
_string_re = re.compile(r'(?:u8|u|U|L)?"(?:[^"\\\n]|\\.)*"(?:_\w*)?')
_raw_string_re = re.compile(r'(?:u8|u|U|L)?R"', re.ASCII)


class TokenError(ValueError):
    """
    Represents an error encountered during tokenization.
    """


@dataclass(frozen=True)
class Token:
    """
    Represents a token constructed by the lexer.

    Tokens are immutable. Tokens produced by macro expansion record the
    macro reference they were expanded from in `origin`.
    """

    kind: TokenKind
    lexeme: str
    file: str = "<string>"
    line: int = 1
    col: int = 0
    offset: int = 0
    prev_white: bool = False
    bol: bool = False
    expandable: bool = True
    origin: Token | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return self.lexeme

    def spelling(self) -> list[str]:
        """
        Return the string representation of this token in the input code.
        Useful primarily for debugging and generating error messages.
        """
        return [self.lexeme]

    @property
    def is_identifier_like(self) -> bool:
        """
        Keywords are ordinary identifiers to the preprocessor.
        """
        return self.kind in (TokenKind.IDENTIFIER, TokenKind.KEYWORD)

    @property
    def is_hash(self) -> bool:
        return (
            self.kind == TokenKind.PUNCTUATOR
            and self.lexeme in HASH_SPELLINGS
        )

    @property
    def is_hashhash(self) -> bool:
        return (
            self.kind == TokenKind.PUNCTUATOR
            and self.lexeme in HASHHASH_SPELLINGS
        )

    @property
    def punctuator(self) -> str | None:
        """
        Returns
        -------
        str | None
            The name of this punctuator (e.g. "HASH"), or None if this token
            is not a known punctuator.
        """
        if self.kind != TokenKind.PUNCTUATOR:
            return None
        return PUNCTUATORS.get(self.lexeme)

    def provenance(self) -> list[Token]:
        """
        Returns
        -------
        list[Token]
            The chain of macro references this token was expanded from,
            innermost first.
        """
        chain = []
        origin = self.origin
        while origin is not None:
            chain.append(origin)
            origin = origin.origin
        return chain


class Lexer:
    """
    A lexer for C and C++ source.

    Tokens are produced lazily. Every call to `tokens` starts again from the
    beginning of the source, so the same source can be tokenized any number
    of times with identical results.
    """

    def __init__(
        self,
        source: SourceText | str,
        *,
        keywords: Iterable[str] | None = None,
        punctuators: Iterable[str] | None = None,
        path: str = "<string>",
    ) -> None:
        # Strings are assumed to be normalized already.
        if isinstance(source, str):
            source = normalize(source, path, trigraphs=False)
        self.source = source
        self.string = source.text
        self.keywords = (
            CPP_KEYWORDS if keywords is None else frozenset(keywords)
        )

        if punctuators is None:
            punctuators = PUNCTUATORS.keys()
        self._punctuators: dict[int, set[str]] = {}
        for p in punctuators:
            self._punctuators.setdefault(len(p), set()).add(p)
        self._max_punctuator = max(self._punctuators, default=0)

        self.pos = 0
        self.prev_white = False
        self.bol = True

    def read(self, n: int = 1) -> str:
        """
        Return the next n characters in the string.
        """
        return self.string[self.pos : self.pos + n]

    def eos(self) -> bool:
        """
        Return True when the end of the string is reached.
        """
        return self.pos >= len(self.string)

    def match(self, literal: str) -> None:
        """
        Match a character/string literal exactly and advance position.
        """
        if self.read(len(literal)) == literal:
            self.pos += len(literal)
        else:
            raise TokenError()

    def whitespace(self) -> TokenKind:
        """
        Match a run of whitespace, including newlines.
        """
        start = self.pos
        while not self.eos() and self.read() in " \t\n\v\f":
            self.pos += 1
        if self.pos == start:
            raise TokenError("Expected whitespace.")
        return TokenKind.WHITESPACE

    def comment(self) -> TokenKind:
        """
        Match a line comment or a block comment. An unterminated block
        comment extends to the end of the source.
        """
        start = self.pos
        if self.read(2) == "//":
            end = self.string.find("\n", self.pos)
            self.pos = len(self.string) if end == -1 else end
        elif self.read(2) == "/*":
            end = self.string.find("*/", self.pos + 2)
            self.pos = len(self.string) if end == -1 else end + 2
        else:
            raise TokenError("Expected comment.")
        return TokenKind.COMMENT

    def number(self) -> TokenKind:
        """
        Match a 'preprocessing number'.
        These cannot necessarily be evaluated by the preprocessor (and may
        not be valid syntax).

        <exponent> := ['e'|'E'|'p'|'P']['+'|'-']
        <number> := .?<digit>[<alpha>|<digit>|'_'|'.'|<exponent>|
                              '''<alpha>|'''<digit>]*
        """
        start = self.pos
        if self.read() == ".":
            self.pos += 1
        if not self.read().isdigit():
            self.pos = start
            raise TokenError("Expected digit.")
        self.pos += 1

        exponents = ["e+", "e-", "E+", "E-", "p+", "p-", "P+", "P-"]
        while not self.eos():
            if self.read(2) in exponents:
                self.pos += 2
            elif self.read() == "'" and (
                self.read(2)[1:].isalnum() or self.read(2)[1:] == "_"
            ):
                # Digit separator
                self.pos += 2
            elif self.read().isalnum() or self.read() in ["_", "."]:
                self.pos += 1
            else:
                break

        return TokenKind.NUMBER

    def _ud_suffix(self) -> None:
        """
        Consume a user-defined literal suffix, if present.
        """
        if self.read() == "_":
            while not self.eos() and (
                self.read().isalnum() or self.read() == "_"
            ):
                self.pos += 1

    def _quoted(self, quote: str) -> None:
        """
        Consume characters up to and including the closing `quote`. Stops
        before a newline if the literal is unterminated.
        """
        while not self.eos():
            c = self.read()
            if c == "\\" and self.read(2)[1:] not in ["", "\n"]:
                self.pos += 2
            elif c == "\n":
                return
            else:
                self.pos += 1
                if c == quote:
                    self._ud_suffix()
                    return

    def _prefix(self, prefixes: list[str], quote: str) -> str:
        for prefix in prefixes:
            if self.read(len(prefix) + 1) == prefix + quote:
                return prefix
        raise TokenError("Expected literal prefix.")

    def character_constant(self) -> TokenKind:
        """
        Match a character constant, with an optional encoding prefix.

        <character-constant> := <prefix>?'''<c-char>*'''
        """
        start = self.pos
        prefix = self._prefix(_ENCODING_PREFIXES, "'")
        self.pos += len(prefix) + 1
        self._quoted("'")
        return TokenKind.CHARACTER

    def raw_string_constant(self) -> TokenKind:
        """
        Match a raw string literal.

        <raw-string> := <prefix>?'R"'<delimiter>'('.*')'<delimiter>'"'
        """
        start = self.pos
        prefix = self._prefix(_RAW_PREFIXES, '"')
        self.pos += len(prefix) + 1

        open_paren = self.string.find("(", self.pos, self.pos + 17)
        delimiter = self.string[self.pos : open_paren]
        if open_paren == -1 or any(c in delimiter for c in ' )\\\t\v\f\n'):
            self.pos = start
            raise TokenError("Invalid raw string delimiter.")

        terminator = ")" + delimiter + '"'
        end = self.string.find(terminator, open_paren + 1)
        if end == -1:
            self.pos = start
            raise TokenError("Unterminated raw string.")

        self.pos = end + len(terminator)
        self._ud_suffix()
        return TokenKind.STRING

    def string_constant(self) -> TokenKind:
        """
        Match a string constant, with an optional encoding prefix.

        <string-constant> := <prefix>?'"'<s-char>*'"'
        """
        start = self.pos
        prefix = self._prefix(_ENCODING_PREFIXES, '"')
        self.pos += len(prefix) + 1
        self._quoted('"')
        return TokenKind.STRING

    def identifier(self) -> TokenKind:
        """
        Match an identifier, and reclassify it as a keyword if it is one.

        <identifier> := [<alpha>|'_'|'$'][<alpha>|<digit>|'_'|'$']*
        """
        start = self.pos
        while not self.eos() and (
            self.read().isalnum() or self.read() in ["_", "$"]
        ):
            # First character of an identifier cannot be a digit
            if self.pos == start and self.read().isdigit():
                raise TokenError("Identifiers cannot start with a digit.")
            self.pos += 1

        if self.pos == start:
            raise TokenError("Invalid identifier.")

        kind = TokenKind.IDENTIFIER
        if self.string[start : self.pos] in self.keywords:
            kind = TokenKind.KEYWORD
        return kind

    def punctuator(self) -> TokenKind:
        """
        Match the longest punctuator at the current position.
        """
        start = self.pos

        # <:: is < followed by :: unless followed by : or >
        if self.read(3) == "<::" and self.read(4)[3:] not in [":", ">"]:
            self.pos += 1
            return TokenKind.PUNCTUATOR

        for n in range(self._max_punctuator, 0, -1):
            if self.read(n) in self._punctuators.get(n, ()):
                self.pos += n
                return TokenKind.PUNCTUATOR

        raise TokenError("Invalid punctuator.")

    def match_one(self) -> TokenKind:
        """
        Consume the next token, including whitespace and comments, and
        return its kind. Unmatched characters are consumed as unknown
        tokens.
        """
        start = self.pos
        c = self.read()
        if c in " \t\n\v\f":
            return self.whitespace()
        if self.read(2) in ["//", "/*"]:
            return self.comment()
        if c.isdigit() or (c == "." and self.read(2)[1:].isdigit()):
            return self.number()

        # Literals, possibly with an encoding prefix
        if c in _LITERAL_STARTS:
            for f in [
                self.raw_string_constant,
                self.character_constant,
                self.string_constant,
            ]:
                try:
                    return f()
                except TokenError:
                    self.pos = start

        if c.isalnum() or c in ["_", "$"]:
            return self.identifier()

        try:
            return self.punctuator()
        except TokenError:
            self.pos = start

        log.debug(f"{self.source.path}: unknown character {c!r}")
        self.pos += 1
        return TokenKind.UNKNOWN

    def _flush(self, pending: list[tuple]) -> Iterator[Token]:
        """
        Yield Tokens for a batch of scanned (kind, start, end, prev_white,
        bol) records, looking up their physical positions together.
        """
        if not pending:
            return
        (lines, columns) = self.source.positions([p[1] for p in pending])
        for (kind, start, end, prev_white, bol), line, col in zip(
            pending,
            lines.tolist(),
            columns.tolist(),
        ):
            yield Token(
                kind,
                self.string[start:end],
                self.source.path,
                line,
                col,
                start,
                prev_white,
                bol,
            )

    def _scan(self, trivia: bool) -> Iterator[Token]:
        self.pos = 0
        self.prev_white = False
        self.bol = True

        # Tokens are positioned a line at a time.
        pending: list[tuple] = []
        while not self.eos():
            start = self.pos
            kind = self.match_one()
            record = (kind, start, self.pos, self.prev_white, self.bol)
            if kind in TRIVIA:
                if trivia:
                    pending.append(record)
                self.prev_white = True
                if (
                    kind == TokenKind.WHITESPACE
                    and "\n" in self.string[start : self.pos]
                ):
                    self.bol = True
                    yield from self._flush(pending)
                    pending = []
                continue

            pending.append(record)
            self.prev_white = False
            self.bol = False

        pending.append(
            (TokenKind.EOF, self.pos, self.pos, self.prev_white, self.bol),
        )
        yield from self._flush(pending)

    def tokens(self, trivia: bool = False) -> Iterator[Token]:
        """
        Lazily yield all tokens in the source, ending with an end-of-file
        token. Each call returns an independent sequence with its own
        cursor.

        Parameters
        ----------
        trivia: bool, default: False
            Whether whitespace and comment tokens are yielded. They are
            always used to compute `prev_white` and `bol`.
        """
        return copy.copy(self)._scan(trivia)

    def tokenize(self, trivia: bool = False) -> list[Token]:
        """
        Return a list of all tokens in the source.
        """
        return list(self.tokens(trivia))

    def __iter__(self) -> Iterator[Token]:
        return self.tokens()

    @staticmethod
    def stringify(tokens: list[Token], site: Token) -> Token:
        """
        Return a string literal spelling the input series of tokens, as
        produced by the # operator. Whitespace between tokens becomes a
        single space, and quotes and backslashes inside string and
        character literals are escaped.
        """
        parts = ['"']
        for idx, t in enumerate(tokens):
            if idx > 0 and t.prev_white:
                parts.append(" ")
            if t.kind in [TokenKind.STRING, TokenKind.CHARACTER]:
                escaped = t.lexeme.replace("\\", "\\\\")
                parts.append(escaped.replace('"', '\\"'))
            else:
                parts.append(t.lexeme)
        parts.append('"')
        return dataclasses.replace(
            site,
            kind=TokenKind.STRING,
            lexeme="".join(parts),
            expandable=True,
        )

    def paste(self, lhs: Token, rhs: Token) -> Token | None:
        """
        Return the single token formed by concatenating lhs and rhs, as
        produced by the ## operator, or None if the concatenation is not a
        valid preprocessing token.
        """
        lexer = Lexer(
            lhs.lexeme + rhs.lexeme,
            keywords=self.keywords,
            punctuators=[p for g in self._punctuators.values() for p in g],
            path=lhs.file,
        )
        tokens = lexer.tokenize(trivia=True)
        if len(tokens) != 2 or tokens[0].kind in TRIVIA:
            return None
        return dataclasses.replace(
            lhs,
            kind=tokens[0].kind,
            lexeme=tokens[0].lexeme,
            expandable=True,
        )


def token_error(token: Token) -> str | None:
    """
    Check the spelling of a literal or comment token.

    Returns
    -------
    str | None
        A description of the problem, or None if the token is well-formed.
    """
    lexeme = token.lexeme
    if token.kind == TokenKind.NUMBER:
        if not _number_re.fullmatch(lexeme):
            return f"invalid numeric literal '{lexeme}'"
    elif token.kind == TokenKind.CHARACTER:
        match = _character_re.fullmatch(lexeme)
        if not match:
            return "missing terminating ' character"
        if not match.group(1):
            return "empty character constant"
    elif token.kind == TokenKind.STRING:
        if not _raw_string_re.match(lexeme) and not _string_re.fullmatch(
            lexeme,
        ):
            return 'missing terminating " character'
    elif token.kind == TokenKind.COMMENT:
        closed = len(lexeme) >= 4 and lexeme.endswith("*/")
        if lexeme.startswith("/*") and not closed:
            return "unterminated comment"
    return None
