"""
Structured build error extraction for the self-repair loop.

Rules are deterministic pattern matching over raw tool output. Recognised:
- TypeScript (tsc):       src/a.ts(12,5): error TS2304: Cannot find name 'x'.
- TypeScript (pretty):    src/a.ts:12:5 - error TS2304: Cannot find name 'x'.
- Python tracebacks:      File "app/main.py", line 7, in <module> ... NameError: ...
- Lint / compiler style:  src/a.js:3:10: 'foo' is not defined

Errors with a file are grouped per file for repair. Lines that merely mention
"error" are kept as unlocated context for regeneration prompts only.
"""

import re
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

TS_PAREN = re.compile(r"^\s*([^\s(]+)\((\d+),(\d+)\):\s*(error|warning)\s+(TS\d+):\s*(.+)$")
TS_PRETTY = re.compile(r"^\s*([^\s:]+\.[jt]sx?):(\d+):(\d+)\s+-\s+(error|warning)\s+(TS\d+):\s*(.+)$")
PY_FRAME = re.compile(r'^\s*File "([^"]+)", line (\d+)')
PY_EXCEPTION = re.compile(r"^(\w+(?:Error|Exception|Exit|Interrupt)):\s*(.*)$")
GENERIC = re.compile(r"^\s*([\w./\-]+\.[A-Za-z]{1,4}):(\d+):(\d+):?\s+(.+)$")

MAX_UNLOCATED = 20


@dataclass
class BuildError:
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    code: Optional[str] = None
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        if self.file is None:
            return f"[BUILD] {self.message}"
        location = f"{self.file}:{self.line}:{self.column or 0}"
        code = f"{self.code}: " if self.code else ""
        return f"[BUILD] {location} - {code}{self.message}"


def _normalize_path(path: str) -> str:
    if path.startswith("./"):
        path = path[2:]
    if path.startswith("/app/"):
        path = path[len("/app/"):]
    return path


def parse_build_errors(output: str) -> List[BuildError]:
    """Parse every recognisable error; warnings are dropped."""
    errors: List[BuildError] = []
    last_frame: Optional[BuildError] = None

    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        if not line:
            continue

        match = TS_PAREN.match(line) or TS_PRETTY.match(line)
        if match:
            file, line_no, col, severity, code, message = match.groups()
            if severity == "error":
                errors.append(BuildError(
                    message=message.strip(), file=_normalize_path(file),
                    line=int(line_no), column=int(col), code=code,
                ))
            continue

        match = PY_FRAME.match(line)
        if match:
            last_frame = BuildError(message="", file=_normalize_path(match.group(1)), line=int(match.group(2)))
            continue

        match = PY_EXCEPTION.match(line)
        if match and last_frame is not None:
            last_frame.code = match.group(1)
            last_frame.message = f"{match.group(1)}: {match.group(2)}".strip()
            errors.append(last_frame)
            last_frame = None
            continue

        match = GENERIC.match(line)
        if match:
            file, line_no, col, message = match.groups()
            if message.lower().startswith("warning"):
                continue
            errors.append(BuildError(
                message=message.strip(), file=_normalize_path(file), line=int(line_no), column=int(col),
            ))

    return errors


def group_by_file(errors: List[BuildError]) -> "OrderedDict[str, List[BuildError]]":
    grouped: "OrderedDict[str, List[BuildError]]" = OrderedDict()
    for error in errors:
        if error.file:
            grouped.setdefault(error.file, []).append(error)
    return grouped


def unlocated_errors(output: str) -> List[str]:
    """Fallback: lines that mention "error" but carry no parseable location."""
    found = []
    for line in output.splitlines():
        stripped = line.strip()
        if "error" in stripped.lower() and len(stripped) > 10:
            found.append(stripped)
        if len(found) >= MAX_UNLOCATED:
            break
    return found


def summarize_errors(output: str, limit: int = MAX_UNLOCATED) -> List[str]:
    """One-line summaries for a regeneration request."""
    located = [e.summary() for e in parse_build_errors(output)]
    if located:
        return located[:limit]
    return [f"[BUILD] {line}" for line in unlocated_errors(output)][:limit]
