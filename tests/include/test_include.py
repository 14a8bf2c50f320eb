# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause

import logging
import os
import tempfile
import unittest

from cxxpp.diagnostics import Severity
from cxxpp.lexer import TokenKind
from cxxpp.platform import Platform
from cxxpp.preprocessor import Preprocessor


def lexemes(tokens):
    return [t.lexeme for t in tokens if t.kind != TokenKind.EOF]


class TestInclude(unittest.TestCase):
    """
    Test resolution and processing of #include directives.
    """

    @classmethod
    def setUpClass(self):
        logging.disable()

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = self.tmp.name

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, name, text):
        path = os.path.join(self.root, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write(text)
        return path

    def _preprocess(self, name, platform=None):
        preprocessor = Preprocessor(platform)
        path = os.path.join(self.root, name)
        tokens = list(preprocessor.tokens(path))
        return (preprocessor, tokens)

    def test_quoted(self):
        """quoted includes search the including file's directory"""
        self._write("main.c", '#include "a.h"\nx\n')
        self._write("a.h", "#define X 1\ny X\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["y", "1", "x"])
        self.assertEqual(preprocessor.diagnostics, [])

        self.assertEqual(os.path.basename(tokens[0].file), "a.h")
        self.assertEqual(tokens[0].line, 2)
        self.assertEqual(os.path.basename(tokens[2].file), "main.c")
        self.assertEqual(tokens[2].line, 2)
        self.assertEqual(tokens[-1].kind, TokenKind.EOF)
        self.assertEqual(os.path.basename(tokens[-1].file), "main.c")

    def test_nested_directory(self):
        """quoted includes are relative to the including file"""
        self._write("main.c", '#include "sub/a.h"\n')
        self._write("sub/a.h", '#include "b.h"\n')
        self._write("sub/b.h", "b\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["b"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_system(self):
        """angle includes only search the include paths"""
        self._write("main.c", "#include <a.h>\n#include <b.h>\n")
        self._write("a.h", "local\n")
        self._write("inc/b.h", "system\n")
        platform = Platform(include_paths=[os.path.join(self.root, "inc")])
        (preprocessor, tokens) = self._preprocess("main.c", platform)
        self.assertEqual(lexemes(tokens), ["system"])
        self.assertEqual(len(preprocessor.diagnostics), 1)
        diagnostic = preprocessor.diagnostics[0]
        self.assertEqual(diagnostic.severity, Severity.WARNING)
        self.assertEqual(diagnostic.message, "system include 'a.h' not found")
        self.assertEqual(diagnostic.line, 1)

    def test_search_order(self):
        """the first match wins"""
        self._write("main.c", '#include "a.h"\n#include <b.h>\n')
        self._write("a.h", "local\n")
        self._write("inc1/a.h", "inc1\n")
        self._write("inc1/b.h", "inc1\n")
        self._write("inc2/b.h", "inc2\n")
        platform = Platform(
            include_paths=[
                os.path.join(self.root, "inc1"),
                os.path.join(self.root, "inc2"),
            ],
        )
        (_, tokens) = self._preprocess("main.c", platform)
        self.assertEqual(lexemes(tokens), ["local", "inc1"])

    def test_not_found(self):
        """missing includes are reported and skipped"""
        self._write("main.c", 'a\n#include "missing.h"\nb\n')
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["a", "b"])
        self.assertEqual(
            [d.message for d in preprocessor.diagnostics],
            ["user include 'missing.h' not found"],
        )

    def test_cycle(self):
        """include cycles are reported and do not hang"""
        self._write("a.c", 'a\n#include "b.h"\n')
        self._write("b.h", 'b\n#include "a.c"\nend\n')
        (preprocessor, tokens) = self._preprocess("a.c")
        self.assertEqual(lexemes(tokens), ["a", "b", "end"])
        self.assertEqual(len(preprocessor.diagnostics), 1)
        diagnostic = preprocessor.diagnostics[0]
        self.assertEqual(diagnostic.severity, Severity.ERROR)
        self.assertTrue(diagnostic.message.startswith("#include nested cycle"))
        self.assertEqual(os.path.basename(diagnostic.file), "b.h")
        self.assertEqual(diagnostic.line, 2)

    def test_depth(self):
        """nesting beyond the maximum depth is reported"""
        self._write("main.c", '#include "a.h"\nmain\n')
        self._write("a.h", '#include "b.h"\na\n')
        self._write("b.h", "b\n")
        platform = Platform(max_include_depth=2)
        (preprocessor, tokens) = self._preprocess("main.c", platform)
        self.assertEqual(lexemes(tokens), ["a", "main"])
        self.assertEqual(
            [d.message for d in preprocessor.diagnostics],
            ["#include nested depth 2 exceeds maximum of 2"],
        )

    def test_pragma_once(self):
        """#pragma once files are only included once"""
        self._write("main.c", '#include "a.h"\n#include "a.h"\n')
        self._write("a.h", "#pragma once\nx\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["x"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_include_guard(self):
        """macros persist across files"""
        self._write("main.c", '#include "a.h"\n#include "a.h"\nX\n')
        self._write(
            "a.h",
            "#ifndef A_H\n#define A_H\n#define X 2\nx\n#endif\n",
        )
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["x", "2"])
        self.assertTrue(preprocessor.has_macro("A_H"))

    def test_computed(self):
        """#include MACRO"""
        self._write("main.c", '#define HDR "a.h"\n#include HDR\n')
        self._write("a.h", "x\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["x"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_invalid(self):
        """malformed include paths are reported"""
        self._write("main.c", "#include\n#include 42\nx\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["x"])
        self.assertEqual(
            [d.message for d in preprocessor.diagnostics],
            ['#include expects "FILENAME" or <FILENAME>'] * 2,
        )

    def test_dead_include(self):
        """includes in dead branches are not resolved"""
        self._write("main.c", '#if 0\n#include "missing.h"\n#endif\n')
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), [])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_include_next(self):
        """#include_next continues the search"""
        self._write("main.c", "#include <n.h>\n")
        self._write("inc1/n.h", "#include_next <n.h>\nfirst\n")
        self._write("inc2/n.h", "second\n")
        platform = Platform(
            include_paths=[
                os.path.join(self.root, "inc1"),
                os.path.join(self.root, "inc2"),
            ],
        )
        (preprocessor, tokens) = self._preprocess("main.c", platform)
        self.assertEqual(lexemes(tokens), ["second", "first"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_has_include(self):
        """__has_include"""
        self._write(
            "main.c",
            '#if __has_include("a.h") && !__has_include(<a.h>)\nyes\n#endif\n'
            "#if defined(__has_include)\nsupported\n#endif\n",
        )
        self._write("a.h", "")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["yes", "supported"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_unterminated_in_include(self):
        """conditionals do not span files"""
        self._write("main.c", '#if 1\n#include "a.h"\nx\n#endif\n')
        self._write("a.h", "#if 1\ny\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["y", "x"])
        self.assertEqual(
            [d.message for d in preprocessor.diagnostics],
            ["unterminated #if"],
        )
        self.assertEqual(
            os.path.basename(preprocessor.diagnostics[0].file),
            "a.h",
        )

        self._write("b.h", "#endif\n")
        self._write("main2.c", '#if 1\n#include "b.h"\n#endif\n')
        (preprocessor, _) = self._preprocess("main2.c")
        self.assertEqual(
            [d.message for d in preprocessor.diagnostics],
            ["#endif without #if"],
        )

    def test_find_include_file(self):
        """lookups are cached"""
        self._write("inc/a.h", "")
        platform = Platform(include_paths=[os.path.join(self.root, "inc")])
        preprocessor = Preprocessor(platform)

        lookup = preprocessor.find_include_file("a.h", None, True)
        self.assertEqual(lookup.path, os.path.join(self.root, "inc", "a.h"))
        self.assertEqual(lookup.index, 0)
        self.assertIs(
            preprocessor.find_include_file("a.h", None, True),
            lookup,
        )
        self.assertIsNone(preprocessor.find_include_file("b.h", None, True))
        self.assertIsNone(
            preprocessor.find_include_file("a.h", None, True, start=1),
        )

    def test_unreadable_include(self):
        """includes that cannot be decoded are reported"""
        self._write("main.c", '#include "bad.h"\nx\n')
        with open(os.path.join(self.root, "bad.h"), "wb") as f:
            f.write(b"\xff\xfe\xfa\n")
        (preprocessor, tokens) = self._preprocess("main.c")
        self.assertEqual(lexemes(tokens), ["x"])
        self.assertEqual(len(preprocessor.diagnostics), 1)
        self.assertEqual(preprocessor.diagnostics[0].severity, Severity.ERROR)


if __name__ == "__main__":
    unittest.main()
