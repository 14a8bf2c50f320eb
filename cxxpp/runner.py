# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains functions to preprocess one or more translation units and collect
the resulting tokens and diagnostics.
"""
from __future__ import annotations

import concurrent.futures as fut
import logging
import os
from dataclasses import dataclass, field

from tqdm import tqdm

from cxxpp.diagnostics import Diagnostic, DiagnosticError, Severity
from cxxpp.file_source import SourceError
from cxxpp.lexer import Token
from cxxpp.platform import Platform
from cxxpp.preprocessor import Preprocessor

log = logging.getLogger(__name__)


@dataclass
class TranslationUnit:
    """
    Represents the result of preprocessing a single source file.

    `error` holds the reason preprocessing stopped early, if it did. In that
    case `tokens` holds whatever was produced before the failure.
    """

    path: str
    tokens: list[Token] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        """
        True if preprocessing completed without reporting any errors.
        """
        return self.error is None and not self.errors()

    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.ERROR]


def preprocess_file(
    path: str | os.PathLike[str],
    platform: Platform | None = None,
) -> TranslationUnit:
    """
    Preprocess the file at `path` using a fresh Preprocessor.

    Parameters
    ----------
    path: str | os.PathLike[str]
        The source file to preprocess.

    platform: Platform | None, default: None
        The definitions, include paths and options to use.

    Returns
    -------
    TranslationUnit
        The tokens and diagnostics produced. Unreadable files, fail-fast
        errors and unexpected failures are recorded in `error` rather than
        raised.
    """
    unit = TranslationUnit(str(path))
    preprocessor = Preprocessor(platform)
    unit.diagnostics = preprocessor.diagnostics
    try:
        for token in preprocessor.tokens(path):
            unit.tokens.append(token)
    except SourceError as e:
        log.error(str(e))
        unit.error = str(e)
    except DiagnosticError as e:
        unit.error = str(e)
    except Exception as e:
        log.exception(f"{path}: preprocessing failed")
        unit.error = f"{type(e).__name__}: {e}"
    return unit


def preprocess_files(
    paths: list[str | os.PathLike[str]],
    platform: Platform | None = None,
    *,
    workers: int = 1,
    show_progress: bool = False,
) -> list[TranslationUnit]:
    """
    Preprocess each file in `paths` as an independent translation unit.

    Parameters
    ----------
    workers: int, default: 1
        The number of worker processes. With a single worker, files are
        processed in this process.

    show_progress: bool, default: False
        Whether to display a progress bar.

    Returns
    -------
    list[TranslationUnit]
        One result per path, in the same order as `paths`.
    """
    if not isinstance(workers, int) or workers < 1:
        raise ValueError("'workers' must be a positive integer.")

    if workers == 1:
        results = []
        for path in tqdm(
            paths,
            desc="Preprocessing",
            unit=" file",
            leave=False,
            disable=not show_progress,
        ):
            log.debug(f"Preprocessing {path}")
            results.append(preprocess_file(path, platform))
        return results

    units: list[TranslationUnit | None] = [None] * len(paths)
    with fut.ProcessPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(preprocess_file, path, platform): idx
            for idx, path in enumerate(paths)
        }
        for future in tqdm(
            fut.as_completed(futures),
            total=len(futures),
            desc="Preprocessing",
            unit=" file",
            leave=False,
            disable=not show_progress,
        ):
            units[futures[future]] = future.result()

    return [unit for unit in units if unit is not None]
