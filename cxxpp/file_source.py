# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes and functions for reading C/C++ files and performing the
early translation phases: decoding, line-ending normalization, trigraph
replacement and line splicing.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Sequence

import numpy as np

log = logging.getLogger(__name__)

TRIGRAPHS = {
    "??=": "#",
    "??/": "\\",
    "??'": "^",
    "??(": "[",
    "??)": "]",
    "??!": "|",
    "??<": "{",
    "??>": "}",
    "??-": "~",
}

_trigraph_re = re.compile(r"\?\?[=/'()!<>\-]")


class SourceError(ValueError):
    """
    Represents a source file that cannot be read or decoded.
    """


class SourceText:
    """
    Represents the normalized text of a source file.

    The normalized text has all line endings converted to '\\n', trigraphs
    replaced and backslash-newline sequences removed. Every offset into the
    normalized text can be mapped back to the physical line and column it
    came from.
    """

    def __init__(
        self,
        path: str,
        text: str,
        starts: list[int],
        lines: list[int],
        columns: list[int],
    ) -> None:
        self.path = path
        self.text = text

        # Each segment is a run of normalized text that maps onto a
        # contiguous run of physical characters.
        self._starts = np.asarray(starts, dtype=np.int64)
        self._lines = np.asarray(lines, dtype=np.int64)
        self._columns = np.asarray(columns, dtype=np.int64)

    def __len__(self) -> int:
        return len(self.text)

    def __repr__(self) -> str:
        return f"SourceText(path={self.path!r}, length={len(self.text)})"

    def positions(
        self,
        offsets: Sequence[int],
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Map offsets in the normalized text to the physical lines and
        columns they came from. Lines start at 1 and columns at 0.

        Returns
        -------
        tuple[np.ndarray, np.ndarray]
            Arrays of physical lines and columns for each offset.
        """
        offsets_array = np.asarray(offsets, dtype=np.int64)
        indices = np.searchsorted(self._starts, offsets_array, side="right")
        indices -= 1
        lines = self._lines[indices]
        relative = offsets_array - self._starts[indices]
        columns = self._columns[indices] + relative
        return (lines, columns)


def normalize(
    text: str,
    path: str = "<string>",
    *,
    trigraphs: bool = True,
) -> SourceText:
    """
    Perform the early translation phases on `text`.

    Parameters
    ----------
    text: str
        The decoded contents of a source file.

    path: str, default: "<string>"
        The name recorded for the source.

    trigraphs: bool, default: True
        Whether trigraph sequences are replaced.

    Returns
    -------
    SourceText
        The normalized text and its physical position map.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    physical_lines = text.split("\n")
    last = len(physical_lines)

    out: list[str] = []
    starts: list[int] = []
    lines: list[int] = []
    columns: list[int] = []
    size = 0

    for number, line in enumerate(physical_lines, start=1):
        starts.append(size)
        lines.append(number)
        columns.append(0)

        if trigraphs and "??" in line:
            parts = []
            pos = 0
            for match in _trigraph_re.finditer(line):
                parts.append(line[pos : match.start()])
                parts.append(TRIGRAPHS[match.group()])
                built = sum(len(p) for p in parts)
                starts.append(size + built)
                lines.append(number)
                columns.append(match.end())
                pos = match.end()
            parts.append(line[pos:])
            line = "".join(parts)

        continued = line.endswith("\\")
        if continued:
            line = line[:-1]

            # A trailing ??/ leaves a segment past the end of the line.
            while starts[-1] > size + len(line):
                starts.pop()
                lines.pop()
                columns.pop()
            if number == last or (
                number == last - 1 and not physical_lines[-1]
            ):
                log.warning(
                    f"{path}:{number}: backslash-newline at end of file",
                )
        elif number != last:
            line += "\n"

        out.append(line)
        size += len(line)

    return SourceText(path, "".join(out), starts, lines, columns)


def read_source(
    path: str | os.PathLike[str],
    *,
    encoding: str = "utf-8",
    trigraphs: bool = True,
) -> SourceText:
    """
    Read and normalize the source file at `path`.

    Raises
    ------
    SourceError
        If the file cannot be read or decoded using `encoding`.
    """
    filename = str(path)
    try:
        with open(filename, "rb") as f:
            data = f.read()
    except OSError as e:
        raise SourceError(f"{filename}: cannot read file: {e}") from e

    try:
        text = data.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise SourceError(
            f"{filename}: cannot decode file as {encoding}: {e}",
        ) from e

    return normalize(text, filename, trigraphs=trigraphs)
