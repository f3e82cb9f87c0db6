"""
Unit Tests for structured build error extraction.
"""

from ops_controller.build_errors import (
    group_by_file,
    parse_build_errors,
    summarize_errors,
    unlocated_errors,
)

TSC_OUTPUT = """
> todo-api@1.0.0 build
> tsc -p .

src/index.ts(12,5): error TS2304: Cannot find name 'express'.
src/routes/todos.ts(3,10): error TS2339: Property 'id' does not exist on type 'Todo'.
src/index.ts(20,1): warning TS6133: 'unused' is declared but its value is never read.
"""

PYTHON_OUTPUT = """
Step 5/7 : RUN python -m compileall app
Traceback (most recent call last):
  File "/app/app/main.py", line 7, in <module>
    handler()
NameError: name 'handler' is not defined
"""


class TestParseBuildErrors:

    def test_tsc_paren_format(self):
        errors = parse_build_errors(TSC_OUTPUT)

        assert [(e.file, e.line, e.column, e.code) for e in errors] == [
            ("src/index.ts", 12, 5, "TS2304"),
            ("src/routes/todos.ts", 3, 10, "TS2339"),
        ]
        assert errors[0].message == "Cannot find name 'express'."

    def test_tsc_pretty_format(self):
        errors = parse_build_errors("./src/app.tsx:4:2 - error TS1005: ';' expected.")

        assert len(errors) == 1
        assert errors[0].file == "src/app.tsx"
        assert errors[0].code == "TS1005"

    def test_python_traceback(self):
        errors = parse_build_errors(PYTHON_OUTPUT)

        assert len(errors) == 1
        assert errors[0].file == "app/main.py"
        assert errors[0].line == 7
        assert errors[0].code == "NameError"
        assert errors[0].message == "NameError: name 'handler' is not defined"

    def test_generic_lint_format(self):
        errors = parse_build_errors(
            "src/util.js:3:10: 'foo' is not defined\n"
            "src/util.js:9:1: warning unused variable\n"
        )

        assert len(errors) == 1
        assert (errors[0].file, errors[0].line, errors[0].column) == ("src/util.js", 3, 10)

    def test_nothing_parseable(self):
        assert parse_build_errors("Killed\nexit code 137") == []


class TestGrouping:

    def test_group_by_file_keeps_first_seen_order(self):
        grouped = group_by_file(parse_build_errors(TSC_OUTPUT + "src/index.ts(30,2): error TS1109: Expression expected.\n"))

        assert list(grouped) == ["src/index.ts", "src/routes/todos.ts"]
        assert len(grouped["src/index.ts"]) == 2


class TestSummaries:

    def test_located_summaries(self):
        summaries = summarize_errors(TSC_OUTPUT)

        assert summaries[0] == "[BUILD] src/index.ts:12:5 - TS2304: Cannot find name 'express'."

    def test_unlocated_fallback(self):
        output = "npm ERR! error while building image layer\nok\n"

        assert unlocated_errors(output) == ["npm ERR! error while building image layer"]
        assert summarize_errors(output) == ["[BUILD] npm ERR! error while building image layer"]

    def test_limit(self):
        output = "\n".join(f"src/a.ts({i},1): error TS2304: Cannot find name 'x{i}'." for i in range(1, 40))

        assert len(summarize_errors(output, limit=5)) == 5
