# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains the records reported by the preprocessor for malformed or
suspicious input.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Diagnostic:
    """
    Represents a problem found while preprocessing a translation unit.
    """

    severity: Severity
    message: str
    file: str
    line: int

    def __str__(self) -> str:
        severity = self.severity.value
        return f"{self.file}:{self.line}: {severity}: {self.message}"


class DiagnosticError(ValueError):
    """
    Represents an error diagnostic raised because the preprocessor was
    configured to stop at the first error.
    """

    def __init__(self, diagnostic: Diagnostic) -> None:
        super().__init__(str(diagnostic))
        self.diagnostic = diagnostic
