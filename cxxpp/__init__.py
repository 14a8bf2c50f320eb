# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
A lexer and preprocessor for C and C++ source code.
"""
from __future__ import annotations

__version__ = "1.0.0"

from cxxpp.diagnostics import Diagnostic, DiagnosticError, Severity
from cxxpp.file_source import SourceError, SourceText, normalize, read_source
from cxxpp.lexer import Lexer, Token, TokenError, TokenKind
from cxxpp.platform import Platform
from cxxpp.preprocessor import (
    Directive,
    DirectiveKind,
    Macro,
    MacroFunction,
    MacroKind,
    MacroTable,
    ParseError,
    Preprocessor,
)
from cxxpp.runner import TranslationUnit, preprocess_file, preprocess_files

__all__ = [
    "Diagnostic",
    "DiagnosticError",
    "Directive",
    "DirectiveKind",
    "Lexer",
    "Macro",
    "MacroFunction",
    "MacroKind",
    "MacroTable",
    "ParseError",
    "Platform",
    "Preprocessor",
    "Severity",
    "SourceError",
    "SourceText",
    "Token",
    "TokenError",
    "TokenKind",
    "TranslationUnit",
    "normalize",
    "preprocess_file",
    "preprocess_files",
    "read_source",
]
