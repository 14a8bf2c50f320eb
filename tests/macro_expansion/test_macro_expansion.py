# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause

import logging
import unittest

from cxxpp.diagnostics import Severity
from cxxpp.lexer import Lexer, TokenKind
from cxxpp.platform import Platform
from cxxpp.preprocessor import (
    MacroFunction,
    MacroKind,
    ParseError,
    Preprocessor,
    macro_from_definition_string,
)


def preprocess(text, platform=None):
    preprocessor = Preprocessor(platform)
    tokens = list(preprocessor.tokens_from_string(text, "test.c"))
    return (preprocessor, tokens)


def lexemes(tokens):
    return [t.lexeme for t in tokens if t.kind != TokenKind.EOF]


class TestMacroExpansion(unittest.TestCase):
    """
    Test macro definition and expansion.
    """

    @classmethod
    def setUpClass(self):
        logging.disable()

    def test_macro_free(self):
        """input without macros is unchanged"""
        text = "int main(int argc, char **argv) {\n  return argc + 0x1;\n}\n"
        (_, tokens) = preprocess(text)
        expected = Lexer(text, path="test.c").tokenize()
        self.assertEqual(tokens, expected)

    def test_object_like(self):
        """object-like macros"""
        (_, tokens) = preprocess("#define N 10\nint a[N];\n")
        self.assertEqual(lexemes(tokens), ["int", "a", "[", "10", "]", ";"])

        number = tokens[3]
        self.assertEqual(number.kind, TokenKind.NUMBER)
        self.assertEqual((number.line, number.col), (2, 6))
        self.assertEqual(number.origin.lexeme, "N")
        self.assertEqual([t.lexeme for t in number.provenance()], ["N"])

    def test_empty_macro(self):
        """macros with no replacement expand to nothing"""
        (_, tokens) = preprocess("#define EMPTY\na EMPTY b\n")
        self.assertEqual(lexemes(tokens), ["a", "b"])

    def test_self_reference(self):
        """#define X X expands to X"""
        (preprocessor, tokens) = preprocess("#define X X\nX\n")
        self.assertEqual(lexemes(tokens), ["X"])
        self.assertFalse(tokens[0].expandable)
        self.assertEqual(preprocessor.diagnostics, [])

    def test_indirect_self_reference(self):
        """mutually recursive macros terminate"""
        (_, tokens) = preprocess("#define A B\n#define B A\nA B\n")
        self.assertEqual(lexemes(tokens), ["A", "B"])

        text = "#define f(x) x + f(x)\nf(1)\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["1", "+", "f", "(", "1", ")"])

    def test_function_like(self):
        """function-like macros"""
        text = "#define ADD(a, b) ((a) + (b))\nADD(f(1, 2), 3)\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(
            " ".join(lexemes(tokens)),
            "( ( f ( 1 , 2 ) ) + ( 3 ) )",
        )

    def test_function_like_without_parens(self):
        """function-like macros need an opening parenthesis"""
        (_, tokens) = preprocess("#define F(x) x\nF + 1\n")
        self.assertEqual(lexemes(tokens), ["F", "+", "1"])

    def test_function_like_across_lines(self):
        """arguments may span lines"""
        (_, tokens) = preprocess("#define F(a, b) a b\nF(1,\n2)\n")
        self.assertEqual(lexemes(tokens), ["1", "2"])

    def test_whitespace_before_params(self):
        """space before ( makes an object-like macro"""
        (preprocessor, tokens) = preprocess("#define F (x) x\nF\n")
        self.assertEqual(preprocessor.get_macro("F").kind, MacroKind.OBJECT)
        self.assertEqual(lexemes(tokens), ["(", "x", ")", "x"])

    def test_no_args(self):
        """f() invokes a macro with no parameters"""
        (preprocessor, tokens) = preprocess("#define F() 1\nF()\n")
        self.assertEqual(lexemes(tokens), ["1"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_empty_argument(self):
        """an empty argument is valid"""
        (preprocessor, tokens) = preprocess("#define F(x) [x]\nF()\n")
        self.assertEqual(lexemes(tokens), ["[", "]"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_argument_count(self):
        """wrong number of arguments is reported"""
        (preprocessor, tokens) = preprocess("#define F(a, b) a b\nF(1)\n")
        self.assertEqual(lexemes(tokens), ["F", "(", "1", ")"])
        self.assertEqual(len(preprocessor.diagnostics), 1)
        diagnostic = preprocessor.diagnostics[0]
        self.assertEqual(diagnostic.severity, Severity.ERROR)
        self.assertEqual(
            diagnostic.message,
            "macro 'F' requires 2 arguments, but 1 given",
        )
        self.assertEqual((diagnostic.file, diagnostic.line), ("test.c", 2))

    def test_unterminated_invocation(self):
        """missing ) is reported"""
        (preprocessor, tokens) = preprocess("#define F(x) x\nF(1\n")
        self.assertEqual(lexemes(tokens), ["F", "(", "1"])
        self.assertEqual(
            preprocessor.diagnostics[0].message,
            "unterminated argument list invoking macro 'F'",
        )

    def test_nested_parentheses(self):
        """commas inside parentheses do not separate arguments"""
        (_, tokens) = preprocess("#define FIRST(a, b) a\nFIRST((1, 2), 3)\n")
        self.assertEqual(lexemes(tokens), ["(", "1", ",", "2", ")"])

    def test_stringize(self):
        """# operator"""
        text = '#define S(x) #x\nS(a+b) S(  a  +  b  ) S("q\\n")\n'
        (_, tokens) = preprocess(text)
        self.assertEqual(
            lexemes(tokens),
            ['"a+b"', '"a + b"', '"\\"q\\\\n\\""'],
        )
        for token in tokens[:-1]:
            self.assertEqual(token.kind, TokenKind.STRING)

    def test_stringize_unexpanded(self):
        """# uses the unexpanded argument"""
        text = (
            "#define ONE 1\n"
            "#define STR(x) #x\n"
            "#define XSTR(x) STR(x)\n"
            "STR(ONE) XSTR(ONE)\n"
        )
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ['"ONE"', '"1"'])

    def test_paste(self):
        """## operator"""
        text = "#define CAT(a, b) a##b\nCAT(foo, bar) CAT(1, 2) CAT(+, =)\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["foobar", "12", "+="])
        self.assertEqual(tokens[0].kind, TokenKind.IDENTIFIER)
        self.assertEqual(tokens[1].kind, TokenKind.NUMBER)
        self.assertEqual(tokens[2].kind, TokenKind.PUNCTUATOR)

    def test_paste_rescan(self):
        """the result of ## is rescanned"""
        text = "#define foobar 42\n#define CAT(a, b) a ## b\nCAT(foo, bar)\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["42"])

    def test_paste_unexpanded(self):
        """## uses the unexpanded argument"""
        text = "#define ONE 1\n#define CAT(a, b) a ## b\nCAT(ONE, 2)\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["ONE2"])

    def test_paste_empty(self):
        """empty arguments act as placemarkers"""
        text = "#define CAT(a, b) a ## b\nCAT(, x) CAT(y, ) CAT(, )\n"
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["x", "y"])
        self.assertEqual(preprocessor.diagnostics, [])

    def test_invalid_paste(self):
        """## that does not form a token is reported"""
        (preprocessor, tokens) = preprocess(
            "#define P(a, b) a ## b\nP(+, -)\n",
        )
        self.assertEqual(lexemes(tokens), ["+", "-"])
        self.assertEqual(len(preprocessor.diagnostics), 1)
        self.assertEqual(
            preprocessor.diagnostics[0].message,
            'pasting "+" and "-" does not give a valid preprocessing token',
        )

    def test_argument_prescan(self):
        """arguments are expanded before substitution"""
        text = "#define ONE 1\n#define ID(x) x\nID(ONE) ID(ID(ONE))\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["1", "1"])

    def test_variadic(self):
        """variadic macros"""
        text = (
            "#define F(fmt, ...) f(fmt, __VA_ARGS__)\n"
            "F(a, b, c)\n"
            "F(a)\n"
        )
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(
            " ".join(lexemes(tokens)),
            "f ( a , b , c ) f ( a , )",
        )
        self.assertEqual(preprocessor.diagnostics, [])

    def test_named_variadic(self):
        """named variadic parameters"""
        text = "#define F(args...) g(args)\nF(1, 2)\n"
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(" ".join(lexemes(tokens)), "g ( 1 , 2 )")
        self.assertTrue(preprocessor.get_macro("F").variadic)

    def test_variadic_comma_paste(self):
        """, ## __VA_ARGS__ drops the comma for empty arguments"""
        text = (
            "#define G(fmt, ...) g(fmt, ## __VA_ARGS__)\n"
            "G(a)\n"
            "G(a, b)\n"
        )
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(
            " ".join(lexemes(tokens)),
            "g ( a ) g ( a , b )",
        )
        self.assertEqual(preprocessor.diagnostics, [])

    def test_stringize_variadic(self):
        """# applied to __VA_ARGS__"""
        (_, tokens) = preprocess("#define S(...) #__VA_ARGS__\nS(a, b)\n")
        self.assertEqual(lexemes(tokens), ['"a, b"'])

    def test_redefinition(self):
        """identical redefinitions are allowed"""
        (preprocessor, _) = preprocess("#define X 1 + 2\n#define X 1 + 2\n")
        self.assertEqual(preprocessor.diagnostics, [])

        (preprocessor, _) = preprocess("#define X 1 + 2\n#define X 1+2\n")
        self.assertEqual(len(preprocessor.diagnostics), 1)
        diagnostic = preprocessor.diagnostics[0]
        self.assertEqual(diagnostic.severity, Severity.WARNING)
        self.assertEqual(diagnostic.message, "'X' redefined")
        self.assertEqual(diagnostic.line, 2)

        (preprocessor, tokens) = preprocess(
            "#define F(a) a\n#define F(b) b\nF(1)\n",
        )
        self.assertEqual(len(preprocessor.diagnostics), 1)
        self.assertEqual(lexemes(tokens), ["1"])

    def test_undef(self):
        """#undef removes definitions"""
        (preprocessor, tokens) = preprocess(
            "#define X 1\nX\n#undef X\nX\n#undef NOT_DEFINED\n",
        )
        self.assertEqual(lexemes(tokens), ["1", "X"])
        self.assertFalse(preprocessor.has_macro("X"))
        self.assertEqual(preprocessor.diagnostics, [])

    def test_invalid_definitions(self):
        """malformed #define is reported and ignored"""
        cases = [
            ("#define\n", "no macro name given in #define directive"),
            ("#define 1 2\n", "macro names must be identifiers"),
            ("#define defined\n", '"defined" cannot be used as a macro name'),
            ("#define F(a, a) a\n", "duplicate macro parameter 'a'"),
            ("#define F(a b\n", "expected ',' or ')' in macro parameter list"),
            ("#define F(a\n", "missing ')' in macro parameter list"),
            ("#define F(x) #y\n", "'#' is not followed by a macro parameter"),
            (
                "#define X ## a\n",
                "'##' cannot appear at either end of a macro expansion",
            ),
        ]
        for text, message in cases:
            with self.subTest(text=text):
                (preprocessor, _) = preprocess(text)
                self.assertEqual(len(preprocessor.macros), 0)
                self.assertEqual(len(preprocessor.diagnostics), 1)
                self.assertEqual(preprocessor.diagnostics[0].message, message)

    def test_builtins(self):
        """__FILE__, __LINE__ and __COUNTER__"""
        text = "__FILE__\n\n__LINE__ __COUNTER__ __COUNTER__\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ['"test.c"', "3", "0", "1"])
        self.assertEqual(tokens[0].kind, TokenKind.STRING)

        text = "#define L __LINE__\n\nL\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["3"])

        (_, tokens) = preprocess("__DATE__ __TIME__\n")
        self.assertEqual(len(tokens[0].lexeme), 13)
        self.assertEqual(len(tokens[1].lexeme), 10)

    def test_line_remapping(self):
        """#line changes reported lines and files"""
        text = "a\n#line 10 \"foo.c\"\nb\n__LINE__ __FILE__\n"
        (_, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["a", "b", "11", '"foo.c"'])
        self.assertEqual((tokens[1].file, tokens[1].line), ("foo.c", 10))

        (_, tokens) = preprocess('# 33 "bar.c" 2\nb\n')
        self.assertEqual((tokens[0].file, tokens[0].line), ("bar.c", 33))

    def test_predefined(self):
        """definitions from the platform"""
        platform = Platform(defines=["A", "B=2", "F(x)=x*x"], undefines=["C"])
        (_, tokens) = preprocess("A B F(3) C\n", platform)
        self.assertEqual(lexemes(tokens), ["1", "2", "3", "*", "3", "C"])

    def test_macro_from_definition_string(self):
        """-D style definitions"""
        macro = macro_from_definition_string("F(a, b)=a+b")
        self.assertIsInstance(macro, MacroFunction)
        self.assertEqual(macro.params, ("a", "b"))
        self.assertEqual(
            [t.lexeme for t in macro.replacement],
            ["a", "+", "b"],
        )

        macro = macro_from_definition_string("X==")
        self.assertEqual([t.lexeme for t in macro.replacement], ["="])

        with self.assertRaises(ParseError):
            macro_from_definition_string("=1")

    def test_same_as(self):
        """macro equivalence"""
        a = macro_from_definition_string("F(x)=x + 1")
        b = macro_from_definition_string("F(x)=x  +  1")
        c = macro_from_definition_string("F(y)=y + 1")
        d = macro_from_definition_string("F=x + 1")
        self.assertTrue(a.same_as(b))
        self.assertFalse(a.same_as(c))
        self.assertFalse(a.same_as(d))

    def test_spelling(self):
        """macros can be spelled"""
        macro = macro_from_definition_string("F(a, ...)=a __VA_ARGS__")
        self.assertEqual(macro.spelling(), ["F(a,...)=a __VA_ARGS__"])

    def test_expansion_limit(self):
        """runaway expansion is stopped"""
        text = "".join(f"#define M{i} M{i + 1}\n" for i in range(250))
        text += "M0\n"
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(len(lexemes(tokens)), 1)
        self.assertEqual(len(preprocessor.diagnostics), 1)
        self.assertEqual(preprocessor.diagnostics[0].severity, Severity.ERROR)

    def test_argument_nesting(self):
        """deeply nested arguments are reported rather than recursed into"""
        text = "#define ID(x) x\n" + "ID(" * 1000 + "1" + ")" * 1000 + "\n"
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(len(preprocessor.diagnostics), 1)
        self.assertEqual(
            preprocessor.diagnostics[0].message,
            "arguments of macro 'ID' nested more than 256 levels deep",
        )
        self.assertEqual(lexemes(tokens).count("ID"), 744)
        self.assertIn("1", lexemes(tokens))

        text = "#define ID(x) x\n" + "ID(" * 200 + "1" + ")" * 200 + "\n"
        (preprocessor, tokens) = preprocess(text)
        self.assertEqual(lexemes(tokens), ["1"])
        self.assertEqual(preprocessor.diagnostics, [])


if __name__ == "__main__":
    unittest.main()
