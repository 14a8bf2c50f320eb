# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains utility functions shared by the lexer, the preprocessor and the
command line interface.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from typing import Any

log = logging.getLogger(__name__)


def _representation_string(
    obj: Any,
    *,
    name: str | None = None,
    attrs: list[str] | None = None,
) -> str:
    """
    Helper function to build representation strings of the form:
    Name(attribute={attribute!r},...)
    """
    if not name:
        name = obj.__class__.__name__
    if not attrs:
        attrs = obj.__dict__
    properties = ",".join(f"{a}={getattr(obj, a)!r}" for a in attrs)
    return f"{name}({properties})"


def valid_path(path: str | os.PathLike[str]) -> bool:
    """
    Check if a given file path is valid.

    This function is intended to be used to validate include paths before
    they are used to open files.

    Parameters
    ----------
    path: str | os.PathLike[str]
        The path to check.

    Returns
    -------
    bool
        True if the path is non-empty and contains no null bytes or
        newlines, False otherwise.
    """
    path = str(path)
    if not path:
        log.debug("Empty path.")
        return False

    for forbidden in ["\x00", "\n", "\r"]:
        if forbidden in path:
            log.debug(f"Path contains forbidden character: {path!r}")
            return False

    return True


def canonical_path(path: str | os.PathLike[str]) -> str:
    """
    Returns
    -------
    str
        The canonical form of `path` used to compare files on the include
        stack.
    """
    return os.path.normcase(os.path.realpath(path))


def spell(tokens: Iterable[Any]) -> str:
    """
    Reconstruct source text from a sequence of tokens.

    A line break is inserted before every token that starts a logical line,
    and a single space before every other token that was preceded by
    whitespace. End-of-file tokens have no spelling.

    Parameters
    ----------
    tokens: Iterable[Token]
        The tokens to spell.

    Returns
    -------
    str
        The reconstructed text, ending in a newline if it is not empty.
    """
    out: list[str] = []
    for token in tokens:
        if not token.lexeme:
            continue
        if out and token.bol:
            out.append("\n")
        elif out and token.prev_white:
            out.append(" ")
        out.append(token.lexeme)
    if out:
        out.append("\n")
    return "".join(out)
