# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Command line interface: preprocess C/C++ files and print the result.
"""
from __future__ import annotations

import argparse
import logging
import sys

from cxxpp import __version__, util
from cxxpp.lexer import C_KEYWORDS
from cxxpp.platform import Platform
from cxxpp.runner import TranslationUnit, preprocess_files

log = logging.getLogger("cxxpp")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cxxpp",
        description="Preprocess C and C++ source files.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cxxpp {__version__}",
    )
    parser.add_argument(
        "files",
        metavar="FILE",
        nargs="+",
        help="source file(s) to preprocess",
    )
    parser.add_argument(
        "-I",
        dest="include_paths",
        metavar="DIR",
        action="append",
        default=[],
        help="add DIR to the include search path",
    )
    parser.add_argument(
        "-D",
        dest="defines",
        metavar="NAME[=VALUE]",
        action="append",
        default=[],
        help="define a macro (VALUE defaults to 1)",
    )
    parser.add_argument(
        "-U",
        dest="undefines",
        metavar="NAME",
        action="append",
        default=[],
        help="undefine a macro",
    )
    parser.add_argument(
        "--max-include-depth",
        type=int,
        default=200,
        help="maximum depth of nested includes (default: 200)",
    )
    parser.add_argument(
        "--pass-through",
        action="store_true",
        help="copy #pragma and #line directives to the output",
    )
    parser.add_argument(
        "--no-trigraphs",
        dest="trigraphs",
        action="store_false",
        help="do not replace trigraph sequences",
    )
    parser.add_argument(
        "--c",
        dest="c_mode",
        action="store_true",
        help="use the C keyword set instead of C++",
    )
    parser.add_argument(
        "--encoding",
        default="utf-8",
        help="encoding of source files (default: utf-8)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="stop at the first error",
    )
    parser.add_argument(
        "--tokens",
        action="store_true",
        help="print one token per line instead of source text",
    )
    parser.add_argument(
        "-j",
        "--workers",
        type=int,
        default=1,
        help="number of files to preprocess in parallel",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="increase verbosity",
    )
    return parser.parse_args(argv)


def _print_unit(unit: TranslationUnit, tokens: bool) -> None:
    if not tokens:
        sys.stdout.write(util.spell(unit.tokens))
        return
    for token in unit.tokens:
        print(
            f"{token.file}:{token.line}:{token.col}\t"
            + f"{token.kind.value}\t{token.lexeme}",
        )


def main(argv: list[str] | None = None) -> int:
    """
    Run the command line interface.

    Returns
    -------
    int
        0 if every file was preprocessed without errors, 1 otherwise.
    """
    args = _parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=level,
        stream=sys.stderr,
    )

    try:
        platform = Platform(
            include_paths=args.include_paths,
            defines=args.defines,
            undefines=args.undefines,
            keywords=C_KEYWORDS if args.c_mode else None,
            max_include_depth=args.max_include_depth,
            pass_through=args.pass_through,
            trigraphs=args.trigraphs,
            encoding=args.encoding,
            fail_fast=args.fail_fast,
        )
        units = preprocess_files(
            args.files,
            platform,
            workers=args.workers,
            show_progress=args.verbose > 0 and len(args.files) > 1,
        )
    except (TypeError, ValueError) as e:
        log.error(str(e))
        return 1

    status = 0
    for unit in units:
        _print_unit(unit, args.tokens)
        if not unit.ok:
            status = 1
    return status


if __name__ == "__main__":
    sys.exit(main())
