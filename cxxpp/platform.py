# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains the Platform class used to specify definitions, include paths and
lexing options for a preprocessor run.
"""
from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from cxxpp import util
from cxxpp.lexer import CPP_KEYWORDS, PUNCTUATORS


class Platform:
    """
    Represents a platform, and everything associated with a platform.
    Contains a list of definitions, include paths and the options that
    control how source files are read and directives are handled.
    """

    def __init__(
        self,
        *,
        include_paths: list[str | os.PathLike[str]] | None = None,
        defines: list[str] | None = None,
        undefines: list[str] | None = None,
        keywords: Iterable[str] | None = None,
        punctuators: Iterable[str] | None = None,
        max_include_depth: int = 200,
        pass_through: bool = False,
        trigraphs: bool = True,
        encoding: str = "utf-8",
        fail_fast: bool = False,
    ) -> None:
        self._include_paths: list[Path] = []
        if include_paths is not None:
            if isinstance(include_paths, (str, os.PathLike)) or not all(
                [isinstance(p, (str, os.PathLike)) for p in include_paths],
            ):
                raise TypeError(
                    "Each path in 'include_paths' must be PathLike.",
                )
            for path in include_paths:
                self.add_include_path(path)

        self._definitions: list[str] = []
        self._undefines: list[str] = []
        if defines is not None:
            if isinstance(defines, str) or not all(
                [isinstance(d, str) for d in defines],
            ):
                raise TypeError("'defines' must be a list of strings.")
            for definition in defines:
                self.define(definition)

        if undefines is not None:
            if isinstance(undefines, str) or not all(
                [isinstance(u, str) for u in undefines],
            ):
                raise TypeError("'undefines' must be a list of strings.")
            for identifier in undefines:
                self.undefine(identifier)

        self.keywords = frozenset(
            CPP_KEYWORDS if keywords is None else keywords,
        )
        self.punctuators = frozenset(
            PUNCTUATORS.keys() if punctuators is None else punctuators,
        )

        if not isinstance(max_include_depth, int) or max_include_depth < 1:
            raise ValueError("'max_include_depth' must be a positive integer.")
        self.max_include_depth = max_include_depth

        self.pass_through = bool(pass_through)
        self.trigraphs = bool(trigraphs)
        self.encoding = encoding
        self.fail_fast = bool(fail_fast)

    def __repr__(self) -> str:
        return util._representation_string(
            self,
            attrs=["include_paths", "definitions", "undefines"],
        )

    @property
    def include_paths(self) -> list[Path]:
        return list(self._include_paths)

    @property
    def definitions(self) -> list[str]:
        return list(self._definitions)

    @property
    def undefines(self) -> list[str]:
        return list(self._undefines)

    def add_include_path(self, path: str | os.PathLike[str]) -> None:
        """
        Insert a new path into the list of include paths for this
        platform.
        """
        if not util.valid_path(path):
            raise ValueError(f"Invalid include path: {path!r}")
        self._include_paths.append(Path(path))

    def define(self, definition: str) -> None:
        """
        Add a macro definition of the form NAME, NAME=value or
        NAME(args)=value, as passed to -D. A later definition of the same
        name replaces an earlier one.
        """
        name = _definition_name(definition)
        if not name:
            raise ValueError(f"Invalid macro definition: {definition!r}")
        self._definitions = [
            d for d in self._definitions if _definition_name(d) != name
        ]
        self._definitions.append(definition)
        if name in self._undefines:
            self._undefines.remove(name)

    def undefine(self, identifier: str) -> None:
        """
        Undefine a macro for this platform, as passed to -U. Undefines are
        applied after all definitions.
        """
        self._definitions = [
            d for d in self._definitions if _definition_name(d) != identifier
        ]
        if identifier not in self._undefines:
            self._undefines.append(identifier)


def _definition_name(definition: str) -> str:
    """
    Return the macro name of a definition string.
    """
    end = len(definition)
    for marker in ["=", "("]:
        index = definition.find(marker)
        if index != -1:
            end = min(end, index)
    return definition[:end].strip()
