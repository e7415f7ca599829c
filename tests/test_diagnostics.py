"""Tests for build/test output parsing."""

from catalyst.lib.diagnostics import Diagnostic, parse_output, summarize


class TestPytestOutput:
    """pytest failure summaries."""

    def test_parses_failed_lines_with_locations(self):
        stdout = """
tests/test_login.py:42: in test_rejects_bad_password
    assert response.status == 401
E   assert 200 == 401
=========================== short test summary info ============================
FAILED tests/test_login.py::test_rejects_bad_password - assert 200 == 401
FAILED tests/test_signup.py::test_requires_email
"""
        diagnostics = parse_output(stdout, "")
        assert len(diagnostics) == 2
        assert diagnostics[0].file == "tests/test_login.py"
        assert diagnostics[0].line == 42
        assert diagnostics[0].message == "test_rejects_bad_password: assert 200 == 401"
        assert diagnostics[1].line is None
        assert diagnostics[1].kind == "test"


class TestCompilerOutput:
    """file:line[:col]: message lines."""

    def test_parses_go_style_errors(self):
        stderr = "# example/pkg\nfile.go:14:2: undefined: foo\nfile.go:20:5: cannot use x\n"
        diagnostics = parse_output("", stderr, kind="build")
        assert [(d.file, d.line) for d in diagnostics] == [("file.go", 14), ("file.go", 20)]
        assert diagnostics[0].message == "undefined: foo"
        assert diagnostics[0].kind == "compile"

    def test_parses_gcc_style_errors(self):
        stderr = "src/main.c:7:3: error: expected ';' before '}' token\n"
        diagnostics = parse_output("", stderr, kind="build")
        assert diagnostics[0].message == "expected ';' before '}' token"

    def test_duplicates_collapse(self):
        stderr = "a.ts:1: bad\na.ts:1: bad\n"
        assert len(parse_output("", stderr, kind="build")) == 1


class TestFallback:
    """Unparseable output."""

    def test_keeps_output_tail(self):
        diagnostics = parse_output("x" * 1000, "", kind="build")
        assert len(diagnostics) == 1
        assert diagnostics[0].file is None
        assert diagnostics[0].message.startswith("...")
        assert len(diagnostics[0].message) == 503

    def test_empty_output(self):
        assert parse_output("", "", kind="test")[0].message == "test failed"


class TestSummarize:
    """One-line summaries."""

    def test_with_location(self):
        diagnostics = [Diagnostic("a.py", 3, "boom"), Diagnostic("b.py", 4, "bang")]
        assert summarize(diagnostics) == "2 problem(s): a.py:3 boom"

    def test_without_location(self):
        assert summarize([Diagnostic(None, None, "it broke")]) == "1 problem(s): it broke"

    def test_empty(self):
        assert summarize([]) == "no diagnostics"

    def test_to_dict(self):
        assert Diagnostic("a.py", 1, "m", "build").to_dict() == {
            "file": "a.py", "line": 1, "message": "m", "kind": "build",
        }
