# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes that define:
- Directives recognized on lines beginning with '#'
- Macros and the table of active macro definitions
- The macro expander and the #if expression evaluator
- The Preprocessor that turns a translation unit into a token stream
"""
from __future__ import annotations

import collections
import dataclasses
import logging
import os
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

import numpy as np

from cxxpp import util
from cxxpp.diagnostics import Diagnostic, DiagnosticError, Severity
from cxxpp.file_source import (
    SourceError,
    SourceText,
    normalize,
    read_source,
)
from cxxpp.lexer import TRIVIA, Lexer, Token, TokenKind, token_error
from cxxpp.platform import Platform

log = logging.getLogger(__name__)

BUILTIN_MACROS = frozenset(
    ["__FILE__", "__LINE__", "__COUNTER__", "__DATE__", "__TIME__"],
)


class ParseError(ValueError):
    """
    Represents an error encountered during parsing.
    """


class NestingError(ParseError):
    """
    Represents input nested too deeply to be parsed.
    """


def _join(tokens: Iterable[Token]) -> str:
    """
    Spell a sequence of tokens on a single line.
    """
    out = []
    for token in tokens:
        if out and token.prev_white:
            out.append(" ")
        out.append(token.lexeme)
    return "".join(out)


class Parser:
    """
    A generic token parser for matching tokens from a list.
    """

    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    def cursor(self) -> Token:
        """
        Return the current token in the list.
        """
        try:
            return self.tokens[self.pos]
        except IndexError:
            raise ParseError("No tokens left for cursor to traverse")

    def eol(self) -> bool:
        """
        Return True when the end of the list is reached.
        """
        return self.pos >= len(self.tokens)

    def match_kind(self, kind: TokenKind) -> Token:
        """
        Match a token of the specified kind and advance position.
        """
        if self.cursor().kind == kind:
            token = self.cursor()
            self.pos += 1
        else:
            raise ParseError(f"Expected {kind.value}.")
        return token

    def match_value(
        self,
        token_value: str,
        kind: TokenKind = TokenKind.PUNCTUATOR,
    ) -> Token:
        """
        Match a token of the specified kind and value, and advance
        position.
        """
        if self.cursor().kind == kind and self.cursor().lexeme == token_value:
            token = self.cursor()
            self.pos += 1
        else:
            raise ParseError(f"Expected {token_value!s}.")
        return token


class DirectiveKind(Enum):
    DEFINE = "define"
    UNDEF = "undef"
    INCLUDE = "include"
    INCLUDE_NEXT = "include_next"
    IF = "if"
    IFDEF = "ifdef"
    IFNDEF = "ifndef"
    ELIF = "elif"
    ELIFDEF = "elifdef"
    ELIFNDEF = "elifndef"
    ELSE = "else"
    ENDIF = "endif"
    ERROR = "error"
    WARNING = "warning"
    PRAGMA = "pragma"
    LINE = "line"
    NULL = "null"
    UNKNOWN = "unknown"


_DIRECTIVE_NAMES = {
    kind.value: kind
    for kind in DirectiveKind
    if kind not in (DirectiveKind.NULL, DirectiveKind.UNKNOWN)
}

OPENING_KINDS = frozenset(
    [DirectiveKind.IF, DirectiveKind.IFDEF, DirectiveKind.IFNDEF],
)
BRANCH_KINDS = frozenset(
    [DirectiveKind.ELIF, DirectiveKind.ELIFDEF, DirectiveKind.ELIFNDEF],
)
CONDITIONAL_KINDS = OPENING_KINDS | BRANCH_KINDS | {
    DirectiveKind.ELSE,
    DirectiveKind.ENDIF,
}


@dataclass
class Directive:
    """
    Represents a line starting with '#'.
    We need to track all of the tokens for this directive, as well as the
    name and the tokens following it.
    """

    kind: DirectiveKind
    tokens: list[Token]
    name: Token | None = None
    args: list[Token] = field(default_factory=list)

    @property
    def hash(self) -> Token:
        return self.tokens[0]

    @property
    def keyword(self) -> str:
        """
        The normalized directive keyword, e.g. "#define", independent of any
        whitespace between '#' and the directive name.
        """
        if self.kind == DirectiveKind.LINE:
            return "#line"
        if self.name is None:
            return "#"
        return f"#{self.name.lexeme}"

    def spelling(self) -> list[str]:
        """
        Recover the original spelling of this directive in the input code.
        Useful primarily for debugging and generating error messages.
        """
        return [_join(self.tokens)]


class IncludePath:
    """
    Represents an include path enclosed by "" or <>
    """

    def __init__(self, path: str, system: bool):
        self.path = path
        self.system = system

    def __repr__(self) -> str:
        return util._representation_string(self)

    def spelling(self) -> list[str]:
        """
        Return the string representation of this path in the input code.
        Useful primarily for debugging and generating error messages.
        """
        if self.system:
            return [f"<{self.path!s}>"]
        return [f'"{self.path!s}"']

    def is_system_path(self) -> bool:
        return self.system


class DirectiveParser(Parser):
    """
    A specialized token parser for recognizing directives.
    """

    def parse(self) -> Directive:
        """
        Parse a preprocessor directive from a full logical line.
        Return a Directive.

        <directive> := '#'[<name><token-list>?]?
        """
        if self.eol() or not self.cursor().is_hash:
            raise ParseError("Not a directive.")
        self.pos += 1

        if self.eol():
            return Directive(DirectiveKind.NULL, self.tokens)

        name = self.cursor()
        self.pos = len(self.tokens)
        if name.is_identifier_like and name.lexeme in _DIRECTIVE_NAMES:
            kind = _DIRECTIVE_NAMES[name.lexeme]
            return Directive(kind, self.tokens, name, self.tokens[2:])

        # GNU line markers: # 33 "file.c"
        if name.kind == TokenKind.NUMBER:
            return Directive(
                DirectiveKind.LINE,
                self.tokens,
                name,
                self.tokens[1:],
            )

        return Directive(DirectiveKind.UNKNOWN, self.tokens, name)

    def identifier(self, keyword: str = "#define") -> Token:
        """
        Match a macro name.
        """
        if self.eol():
            raise ParseError(f"no macro name given in {keyword} directive")
        token = self.cursor()
        if not token.is_identifier_like:
            raise ParseError("macro names must be identifiers")
        self.pos += 1
        return token

    def __param_list(self) -> list[str]:
        """
        Match a comma-separated list of parameters, up to and including the
        closing parenthesis. A variadic parameter is returned with a '...'
        suffix.

        <param-list> := [<param>[','<param>]*]?')'
        <param>      := [<identifier>'...'?|'...']
        """
        params: list[str] = []
        if self.eol():
            raise ParseError("missing ')' in macro parameter list")
        if self.cursor().lexeme == ")":
            self.pos += 1
            return params

        while True:
            if self.eol():
                raise ParseError("missing ')' in macro parameter list")
            token = self.cursor()
            self.pos += 1
            if token.lexeme == "...":
                name = "..."
            elif token.is_identifier_like:
                name = token.lexeme
                if not self.eol() and self.cursor().lexeme == "...":
                    self.pos += 1
                    name += "..."
                if name.rstrip(".") in [p.rstrip(".") for p in params]:
                    raise ParseError(f"duplicate macro parameter '{token}'")
            else:
                raise ParseError(f"expected parameter name, found '{token}'")
            params.append(name)

            if self.eol():
                raise ParseError("missing ')' in macro parameter list")
            separator = self.cursor()
            self.pos += 1
            if separator.lexeme == ")":
                return params
            if separator.lexeme != "," or name.endswith("..."):
                raise ParseError("expected ',' or ')' in macro parameter list")

    def macro_definition(self) -> tuple[Token, list[str] | None]:
        """
        Match a macro definition.
        Return a tuple of the name and parameter list (or None).
        """
        identifier = self.identifier()
        if identifier.lexeme == "defined":
            raise ParseError('"defined" cannot be used as a macro name')

        # Whitespace is NOT permitted before the opening paren of a
        # function-like macro definition.
        params = None
        if (
            not self.eol()
            and self.cursor().lexeme == "("
            and not self.cursor().prev_white
        ):
            self.pos += 1
            params = self.__param_list()

        return (identifier, params)

    def define(self) -> Macro:
        """
        Match the body of a define directive.
        Return a Macro or MacroFunction.

        <define-macro>    := <identifier><token-list>?
        <define-function> := <identifier>'('<param-list><token-list>?
        """
        (identifier, params) = self.macro_definition()

        # Any remaining tokens are the macro expansion
        expansion = self.tokens[self.pos :]
        self.pos = len(self.tokens)
        return make_macro(identifier, params, expansion)

    def include_path(self) -> IncludePath:
        """
        Match an include path.

        <include-path> := ['<'<path>'>'|'"'<path>'"']
        """
        initial_pos = self.pos
        message = '#include expects "FILENAME" or <FILENAME>'

        # Match system include
        try:
            self.match_value("<")
            path_tokens = []
            while self.cursor().lexeme != ">":
                path_tokens.append(self.cursor())
                self.pos += 1
            self.pos += 1
            path_str = _join(path_tokens)
            if util.valid_path(path_str):
                return IncludePath(path_str, system=True)
        except ParseError:
            pass
        self.pos = initial_pos

        # Match local include
        try:
            path_token = self.match_kind(TokenKind.STRING)
            lexeme = path_token.lexeme
            if len(lexeme) >= 2 and lexeme[0] == '"' and lexeme[-1] == '"':
                path_str = lexeme[1:-1]
                if util.valid_path(path_str):
                    return IncludePath(path_str, system=False)
        except ParseError:
            pass
        self.pos = initial_pos

        raise ParseError(message)

    def line_args(self) -> tuple[int, str | None]:
        """
        Match the arguments of a #line directive.

        <line> := <digit-sequence>['"'<path>'"']?
        """
        if self.eol():
            raise ParseError("#line directive requires a line number")
        number = self.cursor()
        if number.kind != TokenKind.NUMBER or not number.lexeme.isdigit():
            raise ParseError(
                f'"{number}" after #line is not a positive integer',
            )
        self.pos += 1

        filename = None
        if not self.eol():
            token = self.cursor()
            if token.kind != TokenKind.STRING or not token.lexeme.startswith(
                '"',
            ):
                raise ParseError(f'invalid filename "{token}"')
            filename = token.lexeme[1:-1]
            self.pos += 1

        return (int(number.lexeme), filename)


def macro_from_definition_string(
    string: str,
    *,
    keywords: Iterable[str] | None = None,
) -> Macro:
    """
    Construct a Macro or MacroFunction by parsing a string of the form
    MACRO=expansion. A string without '=' defines the macro as 1.
    """
    (head, separator, body) = string.partition("=")

    tokens = Lexer(head, keywords=keywords, path="<command line>").tokenize()
    parser = DirectiveParser(tokens[:-1])
    (identifier, params) = parser.macro_definition()
    if not parser.eol():
        raise ParseError(f"invalid macro definition '{string}'")

    if separator:
        expansion = Lexer(
            body,
            keywords=keywords,
            path="<command line>",
        ).tokenize()[:-1]
    else:
        expansion = [Token(TokenKind.NUMBER, "1", "<command line>")]

    return make_macro(identifier, params, expansion)


def make_macro(
    identifier: Token,
    args: list[str] | None,
    expansion: list[Token],
) -> Macro:
    """
    Return a Macro or MacroFunction based on the contents of args.
    """
    if args is None:
        return Macro(identifier, expansion)
    else:
        return MacroFunction(identifier, args, expansion)


class MacroKind(Enum):
    OBJECT = "object-like"
    FUNCTION = "function-like"


class Macro:
    """
    Represents an object-like macro definition.
    """

    kind = MacroKind.OBJECT
    params: tuple[str, ...] = ()
    variadic = False

    def __init__(self, name: Token, replacement: list[Token]) -> None:
        self.name = name.lexeme
        self.token = name
        self.replacement = list(replacement)

        if self.replacement:
            if self.replacement[0].is_hashhash:
                raise ParseError(
                    "'##' cannot appear at either end of a macro expansion",
                )
            elif self.replacement[-1].is_hashhash:
                raise ParseError(
                    "'##' cannot appear at either end of a macro expansion",
                )
            self.replacement[0] = dataclasses.replace(
                self.replacement[0],
                prev_white=False,
            )

        # Arguments only need expanding if they appear somewhere other than
        # next to a # or ## operator.
        self.arg_needs_expansion = [False for _ in self.params]
        for idx, tok in enumerate(self.replacement):
            arg_idx = self.which_arg(tok)
            if arg_idx != -1 and not self._adjacent_to_operator(idx):
                self.arg_needs_expansion[arg_idx] = True

    def which_arg(self, tok: Token) -> int:
        """
        Returns index token occupies in this Macro's parameter list. -1 if
        not found.
        """
        return -1

    def _adjacent_to_operator(self, idx: int) -> bool:
        before = self.replacement[idx - 1] if idx > 0 else None
        after = (
            self.replacement[idx + 1]
            if idx + 1 < len(self.replacement)
            else None
        )
        if after is not None and after.is_hashhash:
            return True
        if before is not None and before.is_hashhash:
            return True
        return (
            before is not None
            and before.is_hash
            and self.kind == MacroKind.FUNCTION
        )

    def __repr__(self) -> str:
        return util._representation_string(
            self,
            attrs=["name", "params", "replacement"],
        )

    def spelling(self) -> list[str]:
        """
        Return (a list containing) a string with a lexable representation of
        this Macro.
        """
        return [f"{self.name!s}={_join(self.replacement)!s}"]

    def same_as(self, other: Macro) -> bool:
        """
        Returns
        -------
        bool
            True if `other` is an identical redefinition of this macro:
            same kind, same parameters and the same replacement list,
            including whether whitespace separates its tokens.
        """
        if (
            self.kind != other.kind
            or self.params != other.params
            or self.variadic != other.variadic
            or len(self.replacement) != len(other.replacement)
        ):
            return False
        for idx, (a, b) in enumerate(zip(self.replacement, other.replacement)):
            if a.lexeme != b.lexeme:
                return False
            if idx > 0 and a.prev_white != b.prev_white:
                return False
        return True

    @staticmethod
    def _relocate(token: Token, site: Token) -> Token:
        """
        Move a token from the macro body to the macro invocation site.
        """
        return dataclasses.replace(
            token,
            file=site.file,
            line=site.line,
            col=site.col,
            offset=site.offset,
            bol=False,
            origin=site,
        )

    def replace(
        self,
        input_args: list[tuple[list[Token], list[Token]]],
        site: Token,
        lexer: Lexer,
        report: Callable[[Severity, str, Token], Diagnostic],
    ) -> list[Token]:
        """
        Return the substituted replacement for this macro.
        input_args is expected to be a list of (original, pre-expanded)
        arguments, one per parameter.
        """
        body = [self._relocate(t, site) for t in self.replacement]
        variadic_idx = len(self.params) - 1 if self.variadic else -1

        # Build the operands of the replacement list. None marks a ##.
        pieces: list[tuple[list[Token], bool] | None] = []
        idx = 0
        while idx < len(body):
            tok = body[idx]
            if tok.is_hashhash:
                pieces.append(None)
                idx += 1
                continue

            if tok.is_hash and self.kind == MacroKind.FUNCTION:
                arg_idx = self.which_arg(body[idx + 1])
                string = Lexer.stringify(input_args[arg_idx][0], tok)
                pieces.append(([string], False))
                idx += 2
                continue

            arg_idx = self.which_arg(tok)
            if arg_idx == -1:
                pieces.append(([tok], False))
            else:
                (raw, expanded) = input_args[arg_idx]
                if self._adjacent_to_operator(idx):
                    substitution = list(raw)
                else:
                    substitution = list(expanded)
                if substitution:
                    substitution[0] = dataclasses.replace(
                        substitution[0],
                        prev_white=tok.prev_white,
                    )
                pieces.append((substitution, arg_idx == variadic_idx))
            idx += 1

        # Apply ## left to right. An empty operand acts as a placemarker.
        out: list[Token] = []
        pending = False
        placemarker = False
        for piece in pieces:
            if piece is None:
                pending = True
                continue
            (tokens, is_variadic) = piece
            if not pending:
                out.extend(tokens)
                placemarker = not tokens
                continue

            pending = False
            if not tokens:
                # GNU extension: , ## __VA_ARGS__ drops the comma when
                # there are no variadic arguments.
                if (
                    is_variadic
                    and not placemarker
                    and out
                    and out[-1].lexeme == ","
                ):
                    out.pop()
                continue
            if placemarker or not out:
                out.extend(tokens)
                placemarker = False
                continue
            if is_variadic and out[-1].lexeme == ",":
                out.extend(tokens)
                continue

            lhs = out.pop()
            pasted = lexer.paste(lhs, tokens[0])
            if pasted is None:
                report(
                    Severity.ERROR,
                    f'pasting "{lhs}" and "{tokens[0]}" does not give a '
                    + "valid preprocessing token",
                    site,
                )
                out.append(lhs)
                out.extend(tokens)
            else:
                out.append(self._relocate(pasted, site))
                out.extend(tokens[1:])

        return out


class MacroFunction(Macro):
    """
    Represents a function-like macro definition.
    """

    kind = MacroKind.FUNCTION

    def __init__(
        self,
        name: Token,
        args: list[str],
        replacement: list[Token],
    ) -> None:
        params = list(args)
        self.variadic = len(params) > 0 and params[-1].endswith("...")
        if self.variadic:
            if params[-1] == "...":
                # An unnamed variable argument replaces __VA_ARGS__
                params[-1] = "__VA_ARGS__"
            else:
                # Strip '...' from argument name
                params[-1] = params[-1][:-3]
        self.params = tuple(params)
        super().__init__(name, replacement)

        for idx, tok in enumerate(self.replacement):
            if tok.is_hash and (
                idx + 1 == len(self.replacement)
                or self.which_arg(self.replacement[idx + 1]) == -1
            ):
                raise ParseError("'#' is not followed by a macro parameter")

    def which_arg(self, tok: Token) -> int:
        """
        Returns index token occupies in this Macro's parameter list. -1 if
        not found.
        """
        if not tok.is_identifier_like:
            return -1
        try:
            return self.params.index(tok.lexeme)
        except ValueError:
            return -1

    def spelling(self) -> list[str]:
        """
        Return the string representation of this macro in the input code.
        Useful primarily for debugging and generating error messages.
        """
        params = list(self.params)
        if self.variadic:
            if params[-1] == "__VA_ARGS__":
                params[-1] = "..."
            else:
                params[-1] += "..."
        arg_str = ",".join(params)
        return [f"{self.name!s}({arg_str!s})={_join(self.replacement)!s}"]


class MacroTable:
    """
    Represents the active macro definitions of one translation unit.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, Macro] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def define(self, macro: Macro) -> Macro | None:
        """
        Define a macro, replacing any existing definition.

        Returns
        -------
        Macro | None
            The previous definition of the macro, or None.
        """
        previous = self._definitions.get(macro.name)
        self._definitions[macro.name] = macro
        return previous

    def undefine(self, name: str) -> None:
        """
        Undefine a macro, if it's defined.
        """
        if name in self._definitions:
            del self._definitions[name]

    def is_defined(self, name: str) -> bool:
        return name in self._definitions

    def get_macro(self, name: str) -> Macro | None:
        """
        Return either a macro definition (if it's defined), or None.
        """
        return self._definitions.get(name)


class ExpanderHelper:
    """
    Class to act as token stream for one level of the expansion stack.
    """

    def __init__(self, tokens: Iterable[Token], name: str | None = None):
        self.tokens = iter(tokens)
        self.name = name
        self._lookahead: Token | None = None

    def eol(self) -> bool:
        """
        Returns True when this stream is exhausted.
        """
        if self._lookahead is None:
            self._lookahead = next(self.tokens, None)
        return self._lookahead is None

    def peek_tok(self) -> Token | None:
        """
        Return the current token without advancing.
        """
        if self.eol():
            return None
        return self._lookahead

    def consume_tok(self) -> Token | None:
        """
        Consume the current token, advance, and return it.
        """
        if self.eol():
            return None
        token, self._lookahead = self._lookahead, None
        return token


class MacroExpander:
    """
    A specialized token parser for recognizing and expanding macros.

    Input is read from a stack of token streams. The bottom of the stack is
    the input being expanded; each macro replacement is pushed on top and
    re-scanned. The names of the macros whose replacements are on the stack
    form the expansion context: a reference to one of them is painted blue
    and is never expanded.
    """

    def __init__(self, preprocessor: Preprocessor) -> None:
        self.preprocessor = preprocessor

        # Prevent runaway expansion. CPP standard requires this be at
        # least 15, but cpp has been implemented to handle 200.
        self.max_level = 200

        # Arguments are pre-expanded recursively, so their nesting is
        # bounded separately.
        self.max_nesting = 256
        self.nesting = 0

    @staticmethod
    def no_expand(parser_stack: list[ExpanderHelper]) -> tuple[str, ...]:
        """
        Return the names of the macros currently being expanded.
        """
        return tuple(h.name for h in parser_stack[1:] if h.name is not None)

    @staticmethod
    def consume_tok(parser_stack: list[ExpanderHelper]) -> Token | None:
        """
        Consume the next token, popping exhausted replacements to get to
        where that can be done.
        """
        while len(parser_stack) > 1 and parser_stack[-1].eol():
            parser_stack.pop()
        return parser_stack[-1].consume_tok()

    @staticmethod
    def peek_tok(parser_stack: list[ExpanderHelper]) -> Token | None:
        """
        Return the next logical token, or None if exhausted.
        This may require us to peek 'down' in the stack.
        """
        for helper in reversed(parser_stack):
            token = helper.peek_tok()
            if token is not None:
                return token
        return None

    def builtin(self, tok: Token) -> Token | None:
        """
        Expand __FILE__, __LINE__, __COUNTER__, __DATE__ and __TIME__.
        """
        name = tok.lexeme
        if name == "__FILE__":
            escaped = tok.file.replace("\\", "\\\\").replace('"', '\\"')
            kind, lexeme = TokenKind.STRING, f'"{escaped}"'
        elif name == "__LINE__":
            kind, lexeme = TokenKind.NUMBER, str(tok.line)
        elif name == "__COUNTER__":
            kind, lexeme = TokenKind.NUMBER, str(self.preprocessor.counter)
            self.preprocessor.counter += 1
        elif name == "__DATE__":
            kind, lexeme = TokenKind.STRING, f'"{self.preprocessor.date}"'
        elif name == "__TIME__":
            kind, lexeme = TokenKind.STRING, f'"{self.preprocessor.time}"'
        else:
            return None
        return dataclasses.replace(tok, kind=kind, lexeme=lexeme, origin=tok)

    def collect_args(
        self,
        parser_stack: list[ExpanderHelper],
        site: Token,
        macro: Macro,
    ) -> tuple[list[list[Token]] | None, list[Token]]:
        """
        Read the arguments of a function-like macro invocation, starting at
        the opening parenthesis.

        Returns
        -------
        tuple[list[list[Token]] | None, list[Token]]
            The arguments (None if the invocation is invalid) and all of the
            tokens consumed.
        """
        report = self.preprocessor.report
        consumed = [self.consume_tok(parser_stack)]
        nparams = len(macro.params)

        args: list[list[Token]] = []
        current_arg: list[Token] = []
        open_paren_count = 1
        while True:
            tok = self.consume_tok(parser_stack)
            if tok is None:
                report(
                    Severity.ERROR,
                    "unterminated argument list invoking macro "
                    + f"'{macro.name}'",
                    site,
                )
                return (None, consumed)
            consumed.append(tok)

            if tok.kind == TokenKind.PUNCTUATOR:
                if tok.lexeme == "(":
                    open_paren_count += 1
                elif tok.lexeme == ")":
                    open_paren_count -= 1
                    if open_paren_count == 0:
                        args.append(current_arg)
                        break
                elif (
                    tok.lexeme == ","
                    and open_paren_count == 1
                    and not (macro.variadic and len(args) == nparams - 1)
                ):
                    args.append(current_arg)
                    current_arg = []
                    continue

            current_arg.append(tok)

        if nparams == 0 and args == [[]]:
            args = []
        if macro.variadic and len(args) == nparams - 1:
            args.append([])

        if len(args) != nparams:
            if macro.variadic:
                expected = f"at least {nparams - 1}"
            else:
                expected = str(nparams)
            report(
                Severity.ERROR,
                f"macro '{macro.name}' requires {expected} arguments, "
                + f"but {len(args)} given",
                site,
            )
            return (None, consumed)

        return (args, consumed)

    def expand(
        self,
        tokens: Iterable[Token],
        context: tuple[str, ...] = (),
    ) -> Iterator[Token]:
        """
        Lazily expand a sequence of input tokens using the active macro
        definitions. `context` holds the names of macros being expanded by
        an enclosing expansion, which must not be expanded again.
        """
        parser_stack = [ExpanderHelper(tokens)]
        while True:
            ctok = self.consume_tok(parser_stack)
            if ctok is None:
                return

            if not ctok.is_identifier_like or not ctok.expandable:
                yield ctok
                continue

            if ctok.lexeme in context + self.no_expand(parser_stack):
                yield dataclasses.replace(ctok, expandable=False)
                continue

            macro = self.preprocessor.get_macro(ctok.lexeme)
            if macro is None:
                builtin = self.builtin(ctok)
                yield ctok if builtin is None else builtin
                continue

            if macro.kind == MacroKind.FUNCTION:
                paren = self.peek_tok(parser_stack)
                if (
                    paren is None
                    or paren.kind != TokenKind.PUNCTUATOR
                    or paren.lexeme != "("
                ):
                    yield ctok
                    continue

            if len(parser_stack) >= self.max_level:
                self.preprocessor.report(
                    Severity.ERROR,
                    f"expansion of macro '{macro.name}' exceeds "
                    + f"{self.max_level} levels",
                    ctok,
                )
                yield dataclasses.replace(ctok, expandable=False)
                continue

            input_args: list[tuple[list[Token], list[Token]]] = []
            if macro.kind == MacroKind.FUNCTION:
                (args, consumed) = self.collect_args(parser_stack, ctok, macro)
                if args is None:
                    # Re-scan everything after the name as ordinary tokens.
                    yield ctok
                    parser_stack.append(ExpanderHelper(consumed))
                    continue

                if (
                    self.nesting >= self.max_nesting
                    and any(macro.arg_needs_expansion)
                ):
                    self.preprocessor.report(
                        Severity.ERROR,
                        f"arguments of macro '{macro.name}' nested more "
                        + f"than {self.max_nesting} levels deep",
                        ctok,
                    )
                    yield dataclasses.replace(ctok, expandable=False)
                    for tok in consumed:
                        yield dataclasses.replace(tok, expandable=False)
                    continue

                outer = context + self.no_expand(parser_stack)
                self.nesting += 1
                try:
                    for idx, arg in enumerate(args):
                        if macro.arg_needs_expansion[idx]:
                            expanded = list(self.expand(arg, outer))
                        else:
                            expanded = []
                        input_args.append((arg, expanded))
                finally:
                    self.nesting -= 1

            replacement = macro.replace(
                input_args,
                ctok,
                self.preprocessor.lexer,
                self.preprocessor.report,
            )
            if replacement:
                replacement[0] = dataclasses.replace(
                    replacement[0],
                    prev_white=ctok.prev_white,
                    bol=ctok.bol,
                )
            parser_stack.append(ExpanderHelper(replacement, macro.name))


def _wrap(value: int, unsigned: bool) -> np.integer:
    """
    Convert a Python integer to a 64-bit integer, wrapping on overflow.
    """
    value &= 0xFFFFFFFFFFFFFFFF
    if unsigned:
        return np.uint64(value)
    if value >= 1 << 63:
        value -= 1 << 64
    return np.int64(value)


def _char_value(lexeme: str) -> int:
    """
    Return the integer value of a character constant.
    """
    body = lexeme[lexeme.index("'") + 1 : lexeme.rindex("'")]
    escapes = {
        "n": 10,
        "t": 9,
        "r": 13,
        "a": 7,
        "b": 8,
        "f": 12,
        "v": 11,
        "e": 27,
        "\\": 92,
        "'": 39,
        '"': 34,
        "?": 63,
    }
    hexdigits = "0123456789abcdefABCDEF"
    octdigits = "01234567"

    chars = []
    i = 0
    while i < len(body):
        c = body[i]
        if c == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt in escapes:
                chars.append(escapes[nxt])
                i += 2
            elif nxt == "x":
                j = i + 2
                while j < len(body) and body[j] in hexdigits:
                    j += 1
                chars.append(int(body[i + 2 : j] or "0", 16))
                i = j
            elif nxt in octdigits:
                j = i + 1
                while j < len(body) and j < i + 4 and body[j] in octdigits:
                    j += 1
                chars.append(int(body[i + 1 : j], 8))
                i = j
            else:
                chars.append(ord(nxt))
                i += 2
        else:
            chars.append(ord(c))
            i += 1

    if not chars:
        raise ParseError("empty character constant")
    if len(chars) == 1:
        return chars[0]
    value = 0
    for c in chars:
        value = (value << 8) | (c & 0xFF)
    return value


class ExpressionEvaluator(Parser):
    """
    A specialized token parser for recognizing/evaluating expressions.
    """

    # Operator precedence, associativity and Python equivalent
    # Lower numbers = higher precedence
    # Based on:
    # https://en.cppreference.com/w/cpp/language/operator_precedence
    OpInfo = collections.namedtuple("OpInfo", ["prec", "assoc"])
    UnaryOperators = {
        "-": OpInfo(12, "RIGHT"),
        "+": OpInfo(12, "RIGHT"),
        "!": OpInfo(12, "RIGHT"),
        "~": OpInfo(12, "RIGHT"),
    }
    BinaryOperators = {
        "?": OpInfo(1, "RIGHT"),
        "||": OpInfo(2, "LEFT"),
        "&&": OpInfo(3, "LEFT"),
        "|": OpInfo(4, "LEFT"),
        "^": OpInfo(5, "LEFT"),
        "&": OpInfo(6, "LEFT"),
        "==": OpInfo(7, "LEFT"),
        "!=": OpInfo(7, "LEFT"),
        "<": OpInfo(8, "LEFT"),
        "<=": OpInfo(8, "LEFT"),
        ">": OpInfo(8, "LEFT"),
        ">=": OpInfo(8, "LEFT"),
        "<<": OpInfo(9, "LEFT"),
        ">>": OpInfo(9, "LEFT"),
        "+": OpInfo(10, "LEFT"),
        "-": OpInfo(10, "LEFT"),
        "*": OpInfo(11, "LEFT"),
        "/": OpInfo(11, "LEFT"),
        "%": OpInfo(11, "LEFT"),
    }
    AlternativeTokens = {
        "and": "&&",
        "or": "||",
        "not": "!",
        "bitand": "&",
        "bitor": "|",
        "xor": "^",
        "compl": "~",
        "not_eq": "!=",
    }

    # C requires at least 63 levels of nested parentheses.
    max_depth = 100

    def __init__(self, tokens: list[Token]) -> None:
        super().__init__([self.__alternative(t) for t in tokens])

        # Depth of operands that are parsed but never evaluated, e.g. the
        # right-hand side of 0 && x.
        self.unevaluated = 0

        # Sub-expressions are parsed recursively.
        self.depth = 0

    @classmethod
    def __alternative(cls, token: Token) -> Token:
        if (
            token.kind == TokenKind.KEYWORD
            and token.lexeme in cls.AlternativeTokens
        ):
            return dataclasses.replace(
                token,
                kind=TokenKind.PUNCTUATOR,
                lexeme=cls.AlternativeTokens[token.lexeme],
            )
        return token

    def __operator(self, table: dict[str, OpInfo]) -> bool:
        """
        Return True if the cursor is at an operator in `table`.
        """
        if self.eol():
            return False
        token = self.cursor()
        return token.kind == TokenKind.PUNCTUATOR and token.lexeme in table

    def call(self) -> np.integer:
        """
        Match a built-in call or function-like macro and return 0.

        <call> := <identifier>'('<expression-list>?')'
        """
        initial_pos = self.pos
        try:
            if not self.cursor().is_identifier_like:
                raise ParseError("Expected identifier.")
            self.pos += 1

            # Read a list of arguments
            self.match_value("(")
            self.__expression_list()
            self.match_value(")")

            # Any function call that still exists after substitution
            # evaluates to false
            return np.int64(0)
        except NestingError:
            raise
        except ParseError:
            self.pos = initial_pos
            raise ParseError("Invalid function call.")

    @staticmethod
    def integer(token: Token) -> np.integer:
        """
        Convert a C-style integer literal to a 64-bit integer.
        """
        text = token.lexeme.replace("'", "")
        value_str = text.rstrip("uUlLzZ")
        suffix = text[len(value_str) :]

        # Use prefix (if present) to determine base
        base = 10
        if value_str[:2] in ["0x", "0X"]:
            base, value_str = 16, value_str[2:]
        elif value_str[:2] in ["0b", "0B"]:
            base, value_str = 2, value_str[2:]
        elif len(value_str) > 1 and value_str[0] == "0":
            base, value_str = 8, value_str[1:]

        try:
            value = int(value_str, base)
        except ValueError:
            raise ParseError(
                f"invalid integer constant '{token}' in expression",
            )

        # Preprocessor always uses 64-bit arithmetic!
        if value >= 1 << 64:
            raise ParseError(f"integer constant '{token}' is too large")
        if "u" in suffix.lower() or value >= 1 << 63:
            return np.uint64(value)
        return np.int64(value)

    def term(self) -> np.integer:
        """
        Match a constant, function call or identifier and convert it to an
        integer.

        <term> := [<integer-constant>|<character-constant>|<call>|
                   <identifier>]
        """
        token = self.cursor()

        if token.kind == TokenKind.NUMBER:
            self.pos += 1
            return self.integer(token)

        if token.kind == TokenKind.CHARACTER:
            self.pos += 1
            return np.int64(_char_value(token.lexeme))

        if token.is_identifier_like:
            if token.lexeme in ["true", "false"]:
                self.pos += 1
                return np.int64(token.lexeme == "true")

            try:
                return self.call()
            except NestingError:
                raise
            except ParseError:
                pass

            # Any identifier that still exists after substitution evaluates
            # to false
            self.pos += 1
            return np.int64(0)

        raise ParseError(
            f'token "{token}" is not valid in preprocessor expressions',
        )

    def primary(self) -> np.integer:
        """
        Match a simple expression
        <primary> := [<unary-op><expression>|'('<expression>')'|<term>]
        """
        if self.__operator(ExpressionEvaluator.UnaryOperators):
            operator = self.cursor()
            self.pos += 1
            (prec, assoc) = ExpressionEvaluator.UnaryOperators[operator.lexeme]
            expr = self.expression(prec)
            return self.__apply_unary_op(operator.lexeme, expr)

        if not self.eol() and self.cursor().lexeme == "(":
            self.pos += 1
            expr = self.expression()
            try:
                self.match_value(")")
            except ParseError:
                raise ParseError("missing ')' in expression")
            return expr

        if self.eol():
            raise ParseError("expected value in expression")
        return self.term()

    def __operand(self, min_precedence: int, skip: bool) -> np.integer:
        """
        Match an operand that is only evaluated if `skip` is False.
        """
        if skip:
            self.unevaluated += 1
        try:
            return self.expression(min_precedence)
        finally:
            if skip:
                self.unevaluated -= 1

    def expression(self, min_precedence: int = 0) -> np.integer:
        """
        Match a preprocessor expression.
        Minimum precedence used to match operators during precedence
        climbing.

        <expression> := <primary>[<binary-op><expression>]?
        """
        if self.depth >= self.max_depth:
            raise NestingError(
                "#if expression nested more than "
                + f"{self.max_depth} levels deep",
            )
        self.depth += 1
        try:
            return self.__climb(min_precedence)
        finally:
            self.depth -= 1

    def __climb(self, min_precedence: int) -> np.integer:
        expr = self.primary()

        # Recursion is terminated based on operator precedence
        while (
            self.__operator(ExpressionEvaluator.BinaryOperators)
            and ExpressionEvaluator.BinaryOperators[self.cursor().lexeme].prec
            >= min_precedence
        ):
            operator = self.cursor()
            self.pos += 1
            (prec, assoc) = ExpressionEvaluator.BinaryOperators[
                operator.lexeme
            ]

            # The ternary conditional operator is treated as a
            # special-case of a binary operator:
            # lhs "?"<expression>":" rhs
            if operator.lexeme == "?":
                true_result = self.__operand(0, skip=not expr)
                try:
                    self.match_value(":")
                except ParseError:
                    raise ParseError("'?' without following ':'")
                false_result = self.__operand(prec, skip=bool(expr))
                expr = true_result if expr else false_result
                continue

            skip = (operator.lexeme == "&&" and not expr) or (
                operator.lexeme == "||" and bool(expr)
            )

            # Minimum precedence for right-hand side depends on
            # associativity
            if assoc == "LEFT":
                rhs = self.__operand(prec + 1, skip)
            else:
                rhs = self.__operand(prec, skip)

            expr = self.__apply_binary_op(operator.lexeme, expr, rhs)

        return expr

    def __expression_list(self) -> list[np.integer]:
        """
        Match a comma-separated list of expressions.
        Return an empty list or the expressions.

        <expression-list> := [<expression>][','<expression-list>]*
        """
        exprs = []
        try:
            expr = self.expression()
            exprs.append(expr)

            while True:
                self.match_value(",")
                expr = self.expression()
                exprs.append(expr)
        except NestingError:
            raise
        except ParseError:
            return exprs

    @staticmethod
    def __apply_unary_op(op: str, operand: np.integer) -> np.integer:
        """
        Apply the specified unary operator: op operand
        """
        if op == "-":
            return -operand
        elif op == "+":
            return +operand
        elif op == "!":
            return np.int64(not operand)
        elif op == "~":
            return ~operand
        else:
            raise ValueError("Not a valid unary operator.")

    @staticmethod
    def __promote(
        lhs: np.integer,
        rhs: np.integer,
    ) -> tuple[np.integer, np.integer]:
        """
        Apply the usual arithmetic conversions: if either operand is
        unsigned, both are.
        """
        if isinstance(lhs, np.unsignedinteger) or isinstance(
            rhs,
            np.unsignedinteger,
        ):
            return (lhs.astype(np.uint64), rhs.astype(np.uint64))
        return (lhs, rhs)

    def __apply_binary_op(
        self,
        op: str,
        lhs: np.integer,
        rhs: np.integer,
    ) -> np.integer:
        """
        Apply the specified binary operator: lhs op rhs
        """
        if op == "||":
            return np.int64(bool(lhs) or bool(rhs))
        elif op == "&&":
            return np.int64(bool(lhs) and bool(rhs))

        (lhs, rhs) = self.__promote(lhs, rhs)
        unsigned = isinstance(lhs, np.unsignedinteger)

        if op == "|":
            return lhs | rhs
        elif op == "^":
            return lhs ^ rhs
        elif op == "&":
            return lhs & rhs
        elif op == "==":
            return np.int64(lhs == rhs)
        elif op == "!=":
            return np.int64(lhs != rhs)
        elif op == "<":
            return np.int64(lhs < rhs)
        elif op == "<=":
            return np.int64(lhs <= rhs)
        elif op == ">":
            return np.int64(lhs > rhs)
        elif op == ">=":
            return np.int64(lhs >= rhs)
        elif op in ["<<", ">>"]:
            count = int(rhs)
            if count < 0 or count >= 64:
                return _wrap(0, unsigned)
            if op == "<<":
                return _wrap(int(lhs) << count, unsigned)
            return _wrap(int(lhs) >> count, unsigned)
        elif op == "+":
            return lhs + rhs
        elif op == "-":
            return lhs - rhs
        elif op == "*":
            return lhs * rhs
        elif op in ["/", "%"]:
            if rhs == 0:
                if self.unevaluated:
                    return _wrap(0, unsigned)
                raise ParseError("division by zero in #if")
            # Division truncates toward zero in C.
            (a, b) = (int(lhs), int(rhs))
            quotient = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                quotient = -quotient
            if op == "/":
                return _wrap(quotient, unsigned)
            return _wrap(a - b * quotient, unsigned)
        else:
            raise ValueError("Not a binary operator.")

    def evaluate(self) -> bool:
        """
        Evaluate a preprocessor expression.
        Return True/False or raises an exception if the expression is
        not recognized.
        """
        with np.errstate(all="ignore"):
            try:
                test_val = self.expression()
            except ParseError:
                raise
            except ValueError:
                raise ParseError("Could not evaluate expression.")

        if not self.eol():
            raise ParseError(
                f'missing binary operator before token "{self.cursor()}"',
            )
        return bool(test_val != 0)


class IncludeLookup(NamedTuple):
    """
    The result of a successful include file search: the full path, and the
    index of the search path it was found in (None for the directory of the
    including file).
    """

    path: str
    index: int | None


@dataclass
class ConditionalFrame:
    """
    Represents one level of #if/#ifdef/#ifndef nesting.
    """

    live: bool
    taken: bool
    parent_live: bool
    token: Token
    keyword: str
    else_seen: bool = False


@dataclass
class IncludeFrame:
    """
    Represents a file on the include stack.
    """

    path: str
    canonical: str | None
    directory: str | None
    search_index: int | None
    tokens: Iterator[Token]
    conditional_depth: int
    line_delta: int = 0
    presumed_file: str | None = None
    lookahead: Token | None = None
    eof: Token | None = None


class Preprocessor:
    """
    Represents the preprocessing of a single translation unit, including:
    - Active macro definitions
    - The conditional inclusion stack
    - The include stack, and includes that should only be processed once
    - Diagnostics reported so far
    """

    @dataclass
    class FileInfo:
        """
        Stores information the Preprocessor knows about a file.
        """

        is_include_once: bool = False

    def __init__(self, platform: Platform | None = None) -> None:
        if platform is None:
            platform = Platform()
        elif not isinstance(platform, Platform):
            raise TypeError("'platform' must be a Platform.")
        self.platform = platform

        self.macros = MacroTable()
        for definition in platform.definitions:
            try:
                macro = macro_from_definition_string(
                    definition,
                    keywords=platform.keywords,
                )
            except ParseError as e:
                raise ValueError(
                    f"Invalid macro definition {definition!r}: {e}",
                ) from e
            self.define(macro)
        for identifier in platform.undefines:
            self.undefine(identifier)

        self.diagnostics: list[Diagnostic] = []
        self.lexer = Lexer(
            "",
            keywords=platform.keywords,
            punctuators=platform.punctuators,
        )
        self.counter = 0
        now = time.localtime()
        month = time.strftime("%b", now)
        self.date = f"{month} {now.tm_mday:2d} {now.tm_year}"
        self.time = time.strftime("%H:%M:%S", now)

        self._expander = MacroExpander(self)
        self._conditions: list[ConditionalFrame] = []
        self._include_stack: list[IncludeFrame] = []
        self._file_info: dict[str, Preprocessor.FileInfo] = {}
        self._found_incl: dict[tuple, IncludeLookup | None] = {}
        self._pending: list[Token] | None = None
        self._eof: Token | None = None
        self._started = False

        self._handlers: dict[DirectiveKind, Callable[[Directive], None]] = {
            DirectiveKind.DEFINE: self._define,
            DirectiveKind.UNDEF: self._undef,
            DirectiveKind.INCLUDE: self._include,
            DirectiveKind.INCLUDE_NEXT: self._include_next,
            DirectiveKind.IF: self._opening,
            DirectiveKind.IFDEF: self._opening,
            DirectiveKind.IFNDEF: self._opening,
            DirectiveKind.ELIF: self._branch,
            DirectiveKind.ELIFDEF: self._branch,
            DirectiveKind.ELIFNDEF: self._branch,
            DirectiveKind.ELSE: self._else,
            DirectiveKind.ENDIF: self._endif,
            DirectiveKind.ERROR: self._error,
            DirectiveKind.WARNING: self._warning,
            DirectiveKind.PRAGMA: self._pragma,
            DirectiveKind.LINE: self._line,
            DirectiveKind.NULL: self._null,
            DirectiveKind.UNKNOWN: self._unknown,
        }
        missing = set(DirectiveKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for directives: {missing}")

    def define(self, macro: Macro) -> Macro | None:
        """
        Define a macro, as if the preprocessor encountered #define.
        Any existing definition is replaced.

        Parameters
        ----------
        macro: Macro
            The macro to define.

        Returns
        -------
        Macro | None
            The previous definition, or None.
        """
        return self.macros.define(macro)

    def undefine(self, identifier: str) -> None:
        """
        Undefine a previously defined macro.

        Parameters
        ----------
        identifier: str
            The name of the macro.
        """
        self.macros.undefine(identifier)

    def get_macro(self, identifier: str) -> Macro | None:
        """
        Returns
        -------
        Macro | None
            The macro associated with `identifier`, or None.
        """
        return self.macros.get_macro(identifier)

    def has_macro(self, identifier: str) -> bool:
        """
        Returns
        -------
        bool
            True if `identifier` is defined and False otherwise.
        """
        return self.get_macro(identifier) is not None

    def is_defined(self, identifier: str) -> bool:
        """
        Returns
        -------
        bool
            True if `identifier` is a defined or built-in macro, as tested
            by defined() and #ifdef.
        """
        return (
            self.has_macro(identifier)
            or identifier in BUILTIN_MACROS
            or identifier in ["__has_include", "__has_include_next"]
        )

    def get_file_info(self, filename: str) -> Preprocessor.FileInfo:
        """
        Access information the preprocessor has about `filename`.

        Parameters
        ----------
        filename: str
            The canonical name of the file of interest.

        Returns
        -------
        FileInfo
            The `FileInfo` associated with this file.
        """
        if filename not in self._file_info:
            self._file_info[filename] = Preprocessor.FileInfo()
        return self._file_info[filename]

    def find_include_file(
        self,
        filename: str,
        this_path: str | None,
        is_system_include: bool = False,
        start: int = 0,
    ) -> IncludeLookup | None:
        """
        Determine and return the full path to `filename`.

        Parameters
        ----------
        filename: str
            The name of the include file to find.

        this_path: str | None
            The directory of the including file, or None if there isn't
            one.

        is_system_include: bool, default: False
            Whether the include file is a system header or not. System
            headers are not searched for in `this_path`.

        start: int, default: 0
            The index of the first include path to search. Searches that
            do not start at 0 (#include_next) skip `this_path`.

        Returns
        -------
        IncludeLookup | None
            The full path to `filename` and where it was found, or `None` if
            it was not found.
        """
        key = (filename, this_path, is_system_include, start)
        if key in self._found_incl:
            log.debug(f"Using cached lookup for '{filename}'")
            return self._found_incl[key]

        candidates: list[tuple[str, int | None]] = []
        if os.path.isabs(filename):
            candidates.append(("", None))
        else:
            if not is_system_include and this_path is not None and start == 0:
                candidates.append((this_path, None))
            for index, path in enumerate(self.platform.include_paths):
                if index >= start:
                    candidates.append((str(path), index))

        result = None
        for path, index in candidates:
            test_path = os.path.abspath(os.path.join(path, filename))
            if os.path.isfile(test_path):
                result = IncludeLookup(test_path, index)
                break

        self._found_incl[key] = result
        return result

    def report(
        self,
        severity: Severity,
        message: str,
        token: Token,
    ) -> Diagnostic:
        """
        Record a diagnostic located at `token`.

        Raises
        ------
        DiagnosticError
            If `severity` is ERROR and the platform requests fail-fast
            behavior.
        """
        diagnostic = Diagnostic(severity, message, token.file, token.line)
        self.diagnostics.append(diagnostic)

        if severity == Severity.ERROR:
            log.error(f"{token.file}:{token.line}: {message}")
            if self.platform.fail_fast:
                raise DiagnosticError(diagnostic)
        else:
            log.warning(f"{token.file}:{token.line}: {message}")
        return diagnostic

    @property
    def live(self) -> bool:
        """
        True if tokens at the current position are part of the output.
        """
        return not self._conditions or self._conditions[-1].live

    def tokens(self, path: str | os.PathLike[str]) -> Iterator[Token]:
        """
        Preprocess the translation unit rooted at `path`.

        Returns
        -------
        Iterator[Token]
            The macro-expanded, conditionally-included tokens of the
            translation unit, ending with an end-of-file token.

        Raises
        ------
        SourceError
            If `path` cannot be read or decoded.
        """
        source = read_source(
            path,
            encoding=self.platform.encoding,
            trigraphs=self.platform.trigraphs,
        )
        return self._start(source, util.canonical_path(path))

    def tokens_from_string(
        self,
        text: str,
        filename: str = "<string>",
    ) -> Iterator[Token]:
        """
        Preprocess a translation unit held in memory.
        Quoted includes are only searched for in the include paths.
        """
        source = normalize(text, filename, trigraphs=self.platform.trigraphs)
        return self._start(source, None)

    def _start(
        self,
        source: SourceText,
        canonical: str | None,
    ) -> Iterator[Token]:
        if self._started:
            raise RuntimeError(
                "A Preprocessor processes a single translation unit.",
            )
        self._started = True
        self._push(source, canonical, None)
        return self._run()

    def _push(
        self,
        source: SourceText,
        canonical: str | None,
        search_index: int | None,
    ) -> None:
        """
        Push a file onto the include stack.
        """
        directory = None
        if canonical is not None:
            directory = os.path.dirname(os.path.abspath(source.path))
        lexer = Lexer(
            source,
            keywords=self.platform.keywords,
            punctuators=self.platform.punctuators,
        )
        self._include_stack.append(
            IncludeFrame(
                path=source.path,
                canonical=canonical,
                directory=directory,
                search_index=search_index,
                tokens=lexer.tokens(trivia=True),
                conditional_depth=len(self._conditions),
            ),
        )

    def _run(self) -> Iterator[Token]:
        while self._include_stack:
            yield from self._checked(self._expander.expand(self._text()))
            if self._pending is not None:
                line, self._pending = self._pending, None
                yield from self._directive(line)
            else:
                self._end_of_file()

        if self._eof is not None:
            yield self._eof

    def _next_line(self, frame: IncludeFrame) -> list[Token] | None:
        """
        Return the tokens of the next logical line of `frame`, or None at
        the end of the file.
        """
        line: list[Token] = []
        while True:
            if frame.lookahead is not None:
                token, frame.lookahead = frame.lookahead, None
            else:
                token = next(frame.tokens)

            if token.kind == TokenKind.EOF:
                frame.eof = token
                if line:
                    frame.lookahead = token
                    return line
                return None

            if token.kind in TRIVIA:
                if token.kind == TokenKind.COMMENT and self.live:
                    message = token_error(token)
                    if message:
                        self.report(Severity.ERROR, message, token)
                continue

            if token.bol and line:
                frame.lookahead = token
                return line

            if frame.line_delta or frame.presumed_file is not None:
                token = dataclasses.replace(
                    token,
                    line=token.line + frame.line_delta,
                    file=frame.presumed_file or token.file,
                )
            line.append(token)

    def _text(self) -> Iterator[Token]:
        """
        Yield the live tokens of the current file up to the next directive
        or the end of the file.
        """
        frame = self._include_stack[-1]
        while True:
            line = self._next_line(frame)
            if line is None:
                return
            if line[0].is_hash:
                self._pending = line
                return
            if self.live:
                yield from line

    def _checked(self, tokens: Iterable[Token]) -> Iterator[Token]:
        """
        Report malformed literals in the output.
        """
        for token in tokens:
            if token.kind in [
                TokenKind.NUMBER,
                TokenKind.CHARACTER,
                TokenKind.STRING,
            ]:
                message = token_error(token)
                if message:
                    self.report(Severity.ERROR, message, token)
            yield token

    def _directive(self, line: list[Token]) -> Iterator[Token]:
        directive = DirectiveParser(line).parse()
        if directive.kind not in CONDITIONAL_KINDS and not self.live:
            return

        if self.platform.pass_through and directive.kind in [
            DirectiveKind.PRAGMA,
            DirectiveKind.LINE,
        ]:
            yield from directive.tokens
            return

        try:
            self._handlers[directive.kind](directive)
        except ParseError as e:
            self.report(Severity.ERROR, str(e), directive.hash)

    def _end_of_file(self) -> None:
        frame = self._include_stack.pop()
        while len(self._conditions) > frame.conditional_depth:
            condition = self._conditions.pop()
            self.report(
                Severity.ERROR,
                f"unterminated {condition.keyword}",
                condition.token,
            )
        if not self._include_stack:
            self._eof = frame.eof

    def _extra_tokens(self, directive: Directive, parser: Parser) -> None:
        if not parser.eol():
            self.report(
                Severity.WARNING,
                f"extra tokens at end of {directive.keyword} directive",
                parser.cursor(),
            )

    def _current_conditional(self) -> ConditionalFrame | None:
        """
        Return the innermost conditional opened in the current file.
        """
        base = self._include_stack[-1].conditional_depth
        if len(self._conditions) > base:
            return self._conditions[-1]
        return None

    def _resolve_operators(self, tokens: list[Token]) -> list[Token]:
        """
        Replace defined X, defined(X) and __has_include(...) with 1 or 0.
        """
        out = []
        idx = 0
        while idx < len(tokens):
            tok = tokens[idx]
            if tok.is_identifier_like and tok.lexeme == "defined":
                (idx, value) = self._defined(tokens, idx + 1)
            elif tok.is_identifier_like and tok.lexeme in [
                "__has_include",
                "__has_include_next",
            ]:
                (idx, value) = self._has_include(
                    tokens,
                    idx + 1,
                    tok.lexeme == "__has_include_next",
                )
            else:
                out.append(tok)
                idx += 1
                continue
            out.append(
                dataclasses.replace(
                    tok,
                    kind=TokenKind.NUMBER,
                    lexeme="1" if value else "0",
                ),
            )
        return out

    def _defined(self, tokens: list[Token], idx: int) -> tuple[int, bool]:
        paren = idx < len(tokens) and tokens[idx].lexeme == "("
        if paren:
            idx += 1
        if idx >= len(tokens) or not tokens[idx].is_identifier_like:
            raise ParseError('operator "defined" requires an identifier')
        name = tokens[idx].lexeme
        idx += 1
        if paren:
            if idx >= len(tokens) or tokens[idx].lexeme != ")":
                raise ParseError("missing ')' after \"defined\"")
            idx += 1
        return (idx, self.is_defined(name))

    def _has_include(
        self,
        tokens: list[Token],
        idx: int,
        include_next: bool,
    ) -> tuple[int, bool]:
        if idx >= len(tokens) or tokens[idx].lexeme != "(":
            raise ParseError("missing '(' after __has_include")
        end = idx + 1
        while end < len(tokens) and tokens[end].lexeme != ")":
            end += 1
        if end == len(tokens):
            raise ParseError("missing ')' after __has_include")

        inner = tokens[idx + 1 : end]
        try:
            path = DirectiveParser(inner).include_path()
        except ParseError:
            expanded = list(self._expander.expand(inner))
            path = DirectiveParser(expanded).include_path()

        lookup = self._lookup(path, include_next, tokens[idx])
        return (end + 1, lookup is not None)

    def _lookup(
        self,
        path: IncludePath,
        include_next: bool,
        token: Token,
    ) -> IncludeLookup | None:
        frame = self._include_stack[-1]
        start = 0
        if include_next:
            if frame.search_index is None:
                self.report(
                    Severity.WARNING,
                    "#include_next in primary source file",
                    token,
                )
            else:
                start = frame.search_index + 1
        return self.find_include_file(
            path.path,
            frame.directory,
            path.system,
            start,
        )

    def _evaluate(self, tokens: list[Token]) -> bool:
        """
        Evaluate the expression of an #if or #elif directive.
        """
        resolved = self._resolve_operators(tokens)
        expanded = list(self._expander.expand(resolved))
        return ExpressionEvaluator(expanded).evaluate()

    def _condition(self, directive: Directive) -> bool:
        """
        Evaluate the condition of an #if-family or #elif-family directive.
        Problems are reported and the condition is treated as false.
        """
        try:
            if directive.kind in [DirectiveKind.IF, DirectiveKind.ELIF]:
                if not directive.args:
                    raise ParseError(f"{directive.keyword} with no expression")
                return self._evaluate(directive.args)

            parser = DirectiveParser(directive.args)
            identifier = parser.identifier(directive.keyword)
            self._extra_tokens(directive, parser)
            defined = self.is_defined(identifier.lexeme)
            if directive.kind in [DirectiveKind.IFDEF, DirectiveKind.ELIFDEF]:
                return defined
            return not defined
        except ParseError as e:
            self.report(Severity.ERROR, str(e), directive.hash)
            return False

    def _define(self, directive: Directive) -> None:
        macro = DirectiveParser(directive.args).define()
        if macro.name in BUILTIN_MACROS:
            self.report(
                Severity.WARNING,
                f"redefining builtin macro '{macro.name}'",
                macro.token,
            )
        previous = self.define(macro)
        if previous is not None and not previous.same_as(macro):
            self.report(
                Severity.WARNING,
                f"'{macro.name}' redefined",
                macro.token,
            )

    def _undef(self, directive: Directive) -> None:
        parser = DirectiveParser(directive.args)
        identifier = parser.identifier(directive.keyword)
        self._extra_tokens(directive, parser)
        self.undefine(identifier.lexeme)

    def _include(self, directive: Directive) -> None:
        self._include_file(directive, include_next=False)

    def _include_next(self, directive: Directive) -> None:
        self._include_file(directive, include_next=True)

    def _include_file(self, directive: Directive, include_next: bool) -> None:
        """
        Resolve an #include and push the included file onto the include
        stack. Computed includes (#include MACRO) are expanded first.
        """
        if not directive.args:
            raise ParseError(
                f'{directive.keyword} expects "FILENAME" or <FILENAME>',
            )
        parser = DirectiveParser(directive.args)
        try:
            path = parser.include_path()
        except ParseError:
            expanded = list(self._expander.expand(directive.args))
            parser = DirectiveParser(expanded)
            path = parser.include_path()
        self._extra_tokens(directive, parser)

        lookup = self._lookup(path, include_next, directive.hash)
        if lookup is None:
            kind = "system include" if path.system else "user include"
            self.report(
                Severity.WARNING,
                f"{kind} '{path.path}' not found",
                directive.hash,
            )
            return

        canonical = util.canonical_path(lookup.path)
        if self.get_file_info(canonical).is_include_once:
            log.debug(f"Skipping '{lookup.path}': already included once")
            return

        active = [frame.canonical for frame in self._include_stack]
        if canonical in active:
            chain = [
                frame.path
                for frame in self._include_stack[active.index(canonical) :]
            ]
            chain.append(lookup.path)
            self.report(
                Severity.ERROR,
                "#include nested cycle: " + " -> ".join(chain),
                directive.hash,
            )
            return

        depth = len(self._include_stack)
        if depth >= self.platform.max_include_depth:
            self.report(
                Severity.ERROR,
                f"#include nested depth {depth} exceeds maximum of "
                + f"{self.platform.max_include_depth}",
                directive.hash,
            )
            return

        try:
            source = read_source(
                lookup.path,
                encoding=self.platform.encoding,
                trigraphs=self.platform.trigraphs,
            )
        except SourceError as e:
            self.report(Severity.ERROR, str(e), directive.hash)
            return

        self._push(source, canonical, lookup.index)

    def _opening(self, directive: Directive) -> None:
        # Conditions inside a dead region are never evaluated.
        parent_live = self.live
        value = self._condition(directive) if parent_live else False
        self._conditions.append(
            ConditionalFrame(
                live=parent_live and value,
                taken=value,
                parent_live=parent_live,
                token=directive.hash,
                keyword=directive.keyword,
            ),
        )

    def _branch(self, directive: Directive) -> None:
        frame = self._current_conditional()
        if frame is None:
            raise ParseError(f"{directive.keyword} without #if")
        if frame.else_seen:
            frame.live = False
            raise ParseError(f"{directive.keyword} after #else")

        if frame.parent_live and not frame.taken:
            frame.live = self._condition(directive)
            frame.taken = frame.live
        else:
            frame.live = False

    def _else(self, directive: Directive) -> None:
        frame = self._current_conditional()
        if frame is None:
            raise ParseError("#else without #if")
        if frame.else_seen:
            frame.live = False
            raise ParseError("#else after #else")

        frame.else_seen = True
        frame.live = frame.parent_live and not frame.taken
        frame.taken = True
        if frame.parent_live:
            self._extra_tokens(directive, DirectiveParser(directive.args))

    def _endif(self, directive: Directive) -> None:
        frame = self._current_conditional()
        if frame is None:
            raise ParseError("#endif without #if")
        self._conditions.pop()
        if frame.parent_live:
            self._extra_tokens(directive, DirectiveParser(directive.args))

    def _error(self, directive: Directive) -> None:
        self.report(
            Severity.ERROR,
            f"#error {_join(directive.args)}".rstrip(),
            directive.hash,
        )

    def _warning(self, directive: Directive) -> None:
        self.report(
            Severity.WARNING,
            f"#warning {_join(directive.args)}".rstrip(),
            directive.hash,
        )

    def _pragma(self, directive: Directive) -> None:
        if directive.args and directive.args[0].lexeme == "once":
            frame = self._include_stack[-1]
            if frame.canonical is not None:
                self.get_file_info(frame.canonical).is_include_once = True
            return
        log.debug(
            f"{directive.hash.file}:{directive.hash.line}: ignoring "
            + directive.spelling()[0],
        )

    def _line(self, directive: Directive) -> None:
        parser = DirectiveParser(directive.args)
        try:
            (number, filename) = parser.line_args()
        except ParseError:
            expanded = list(self._expander.expand(directive.args))
            parser = DirectiveParser(expanded)
            (number, filename) = parser.line_args()

        # GNU line markers carry trailing flags.
        name = directive.name
        if name is not None and name.kind != TokenKind.NUMBER:
            self._extra_tokens(directive, parser)

        frame = self._include_stack[-1]
        physical = directive.tokens[-1].line - frame.line_delta
        frame.line_delta = number - (physical + 1)
        if filename is not None:
            frame.presumed_file = filename

    def _null(self, directive: Directive) -> None:
        pass

    def _unknown(self, directive: Directive) -> None:
        raise ParseError(
            f"invalid preprocessing directive {directive.keyword}",
        )
