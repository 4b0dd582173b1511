"""
Lint a single committed command file (commands/<collection>/<command>.js).

Used by maintainers and the repository's pull-request checks on hand-edited
command files. Reuses the Stage 2 pattern tables: every dangerous pattern
and every CRITICAL/HIGH suspicious pattern is an error; the remaining
suspicious patterns, hardcoded domains and long encoded literals are
warnings, as are missing best practices and missing header comments.

    score = max(0, 100 - 20 × errors - 5 × warnings)

The file is only read as text. It is never evaluated, so unlike a JS
toolchain this does not report syntax errors.
"""

import argparse
import os
import re
from typing import Optional

from . import cli_support
from .stage_2_pattern_risk_scan import DANGEROUS_PATTERNS, SUSPICIOUS_PATTERNS

ERROR_PENALTY = 20
WARNING_PENALTY = 5

HEADER_FIELDS = ("Command Name:", "Description:", "Category:", "Author:")
HEADER_SCAN_LINES = 10

_HARDCODED_DOMAIN = re.compile(r"=\s*[\"'`][^\"'`]*\.(?:com|net|org|dynamics|microsoft)", re.IGNORECASE)
_ENCODED_LITERAL = re.compile(r"=\s*[\"'`][A-Za-z0-9+/]{20,}={0,2}[\"'`]")
_IIFE = re.compile(r"\((?:async\s+)?function\s*\(\s*\)\s*\{[\s\S]*\}\)\(\s*\);?")
_ARROW_IIFE = re.compile(r"\((?:async\s*)?\(\s*\)\s*=>\s*\{[\s\S]*\}\)\(\s*\);?")
_USER_FEEDBACK = re.compile(r"\b(?:openAlertDialog|openErrorDialog|setFormNotification)\b")


def validate_command_file(path: str) -> dict:
    if not os.path.isfile(path):
        return _result(["File does not exist"], [])
    with open(path, "r", encoding="utf-8") as f:
        return validate_command_source(f.read())


def validate_command_source(content: str) -> dict:
    errors = []
    warnings = []
    _check_security(content, errors, warnings)
    _check_quality(content, warnings)
    _check_documentation(content, warnings)
    return _result(errors, warnings)


def _check_security(content: str, errors: list, warnings: list) -> None:
    for pattern in DANGEROUS_PATTERNS:
        match = pattern.regex.search(content)
        if match:
            errors.append(f'Security issue: Found potentially dangerous pattern "{match.group(0)}"')

    for pattern in SUSPICIOUS_PATTERNS:
        match = pattern.regex.search(content)
        if not match:
            continue
        if pattern.severity in ("CRITICAL", "HIGH"):
            errors.append(f'Security issue: Found potentially dangerous pattern "{match.group(0)}"')
        else:
            warnings.append(f"{pattern.category}: {match.group(0)}")

    for number, line in enumerate(content.split("\n"), start=1):
        if _HARDCODED_DOMAIN.search(line):
            warnings.append(f"Line {number}: Possible hardcoded URL or domain")
        if _ENCODED_LITERAL.search(line):
            warnings.append(f"Line {number}: Possible encoded data or token")


def _check_quality(content: str, warnings: list) -> None:
    if "use strict" not in content:
        warnings.append('Missing "use strict" directive')
    if not _IIFE.search(content) and not _ARROW_IIFE.search(content):
        warnings.append("Command should be wrapped in IIFE (Immediately Invoked Function Expression)")
    if "try" not in content or "catch" not in content:
        warnings.append("Missing error handling (try/catch blocks)")
    if not _USER_FEEDBACK.search(content):
        warnings.append("No user feedback mechanisms found")
    if "console.log" in content:
        warnings.append("Remove console.log statements for production")


def _check_documentation(content: str, warnings: list) -> None:
    lines = content.split("\n")
    head = lines[:HEADER_SCAN_LINES]
    for field in HEADER_FIELDS:
        if not any(field in line for line in head):
            warnings.append(f'Missing "{field}" in header comments')

    code_lines = [
        line for line in lines
        if line.strip() and not line.strip().startswith(("//", "/*", "*"))
    ]
    comment_lines = [line for line in lines if "//" in line or "/*" in line or "*/" in line]
    if len(code_lines) > 20 and len(comment_lines) < len(code_lines) * 0.1:
        warnings.append("Consider adding more inline comments for complex code")


def _result(errors: list, warnings: list) -> dict:
    return {
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "score": max(0, 100 - ERROR_PENALTY * len(errors) - WARNING_PENALTY * len(warnings)),
    }


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate a single command .js file.")
    parser.add_argument("path", help="Path to the command file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    result = validate_command_file(args.path)
    cli_support.emit_json(result)

    lines = [f"Validation Results for: {os.path.basename(args.path)}", f"Score: {result['score']}/100"]
    if result["errors"]:
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in result["errors"])
    if result["warnings"]:
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in result["warnings"])
    if result["valid"] and not result["warnings"]:
        lines.append("Command validation passed!")
    cli_support.print_summary("\n".join(lines))

    return cli_support.EXIT_OK if result["valid"] else cli_support.EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
