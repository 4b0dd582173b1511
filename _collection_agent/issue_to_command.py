"""
Issue to Command — Community Command Collections

PURPOSE:
    Convert a single-command submission issue (the share-command.yml
    template, titled "[COMMAND] <name>") into one Level Up command: its
    metadata, the JavaScript from the first fenced code block, the usage
    documentation, and a validation result. A valid command is written out
    as a .js file with a generated header comment.

    This is the one-command sibling of stage 1. It reuses stage 1's section
    tokenizer and field lookup, so the same "### Label" / "**Label:**"
    spellings and aliases are accepted.

CALLED BY:
    The `collection-issue-to-command` command-line tool.

DESIGN DECISIONS:
    - Code is taken from the first ```javascript (or ```js) block in the
      body, falling back to the first fenced block of any language.
    - Categories use the collection list. A slug spelling such as
      "form-actions" resolves to "Form Actions"; anything else is "Other".
    - Scoring is stage 1's: 100 - 25 per error - 10 per warning, floor 0.
"""

import argparse
import logging
import os
import re
from datetime import datetime
from typing import Optional

from . import cli_support
from .errors import MalformedInput
from .models import comment_text, slugify
from .stage_1_parse_submission import (
    SUPPORTED_CATEGORIES,
    calculate_validation_score,
    load_issue,
    lookup_field,
    normalize_category,
    split_sections,
    split_tags,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = "./commands"

_TITLE_PREFIX = re.compile(r"\[COMMAND\]\s*(.+)", re.IGNORECASE)
_JAVASCRIPT_BLOCK = re.compile(r"```(?:javascript|js)\b[ \t]*\n?(.*?)\n?[ \t]*```", re.IGNORECASE | re.DOTALL)
_ANY_BLOCK = re.compile(r"```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)

_DYNAMIC_EXECUTION = (
    (re.compile(r"\beval\s*\("), "Code contains dangerous eval() function"),
    (re.compile(r"\bnew\s+Function\s*\("), "Code contains dangerous Function constructor"),
)
_USER_FEEDBACK = re.compile(r"openAlertDialog|openErrorDialog|setFormNotification", re.IGNORECASE)
_HARDCODED_URL = re.compile(r"https?://[a-zA-Z0-9.-]+", re.IGNORECASE)


def convert_issue(issue: dict) -> dict:
    """
    Turn a single-command issue into a command record.

    Returns:
        dict with 'metadata', 'code', 'documentation' and 'validation'.
        Never raises on bad content; problems land in validation.
    """
    body = issue.get("body") or ""
    sections = split_sections(body)

    metadata = extract_command_metadata(issue, sections)
    code = extract_code(body)
    documentation = {
        "usageInstructions": lookup_field(sections, "usage-instructions"),
        "testingNotes": lookup_field(sections, "testing-notes"),
        "additionalContext": lookup_field(sections, "additional-context"),
        "prerequisites": lookup_field(sections, "prerequisites"),
        "limitations": lookup_field(sections, "limitations"),
    }

    return {
        "metadata": metadata,
        "code": code,
        "documentation": documentation,
        "validation": validate_command(metadata, code, body),
    }


def extract_command_metadata(issue: dict, sections: dict) -> dict:
    submitter = (issue.get("user") or {}).get("login") or ""
    return {
        "name": lookup_field(sections, "command-name") or extract_title_command(issue.get("title") or ""),
        "description": lookup_field(sections, "description"),
        "category": normalize_command_category(lookup_field(sections, "category")),
        "tags": split_tags(lookup_field(sections, "tags")),
        "author": lookup_field(sections, "author-attribution") or submitter,
        "dynamicsVersion": lookup_field(sections, "dynamics-version") or "All versions",
        "icon": lookup_field(sections, "icon"),
        "submittedBy": submitter,
        "submittedAt": issue.get("created_at") or "",
        "issueNumber": issue.get("number"),
        "issueUrl": issue.get("html_url") or "",
    }


def extract_code(body: str) -> str:
    match = _JAVASCRIPT_BLOCK.search(body or "") or _ANY_BLOCK.search(body or "")
    return match.group(1).strip() if match else ""


def extract_title_command(title: str) -> str:
    """Strip the "[COMMAND]" prefix the template puts on issue titles."""
    match = _TITLE_PREFIX.search(title)
    return match.group(1).strip() if match else title.strip()


def normalize_command_category(category: str) -> str:
    resolved = normalize_category(category)
    if resolved != "Other" or not category:
        return resolved
    wanted = slugify(category.strip())
    for supported in SUPPORTED_CATEGORIES:
        if slugify(supported) == wanted:
            return supported
    return "Other"


def validate_command(metadata: dict, code: str, body: str) -> dict:
    errors = []
    warnings = []

    if not metadata.get("name"):
        errors.append("Command name is required")
    if not metadata.get("description"):
        errors.append("Command description is required")
    if not code:
        errors.append("JavaScript code is required")

    if code:
        if "try" not in code or "catch" not in code:
            warnings.append("Code should include error handling")
        if not _USER_FEEDBACK.search(code):
            warnings.append("Code should provide user feedback")
        for pattern, message in _DYNAMIC_EXECUTION:
            if pattern.search(code):
                errors.append(message)
        if _HARDCODED_URL.search(code):
            warnings.append("Code contains hardcoded URLs")

    if "- [x]" not in body and "- [X]" not in body:
        warnings.append("Safety checklist not completed")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "score": calculate_validation_score(len(errors), len(warnings), 1),
    }


def generate_command_file(command: dict) -> str:
    """Header comment, optional usage / prerequisites blocks, then the code."""
    metadata = command["metadata"]
    documentation = command.get("documentation") or {}

    lines = [
        f"// Command Name: {comment_text(metadata['name'])}",
        f"// Description: {comment_text(metadata['description'])}",
        f"// Category: {comment_text(metadata['category'])}",
        f"// Author: {comment_text(metadata['author'])}",
    ]
    if metadata.get("dynamicsVersion"):
        lines.append(f"// Dynamics Version: {comment_text(metadata['dynamicsVersion'])}")
    if metadata.get("tags"):
        lines.append(f"// Tags: {comment_text(', '.join(metadata['tags']))}")
    if metadata.get("icon"):
        lines.append(f"// Icon: {comment_text(metadata['icon'])}")
    lines.append(f"// Source: {comment_text(metadata.get('issueUrl') or '')}")
    lines.append(f"// Submitted: {_display_date(metadata.get('submittedAt'))}")
    lines.append("")

    for title, key in (("USAGE INSTRUCTIONS", "usageInstructions"), ("PREREQUISITES", "prerequisites")):
        if documentation.get(key):
            lines.extend(_block_comment(title, documentation[key]))

    return "\n".join(lines) + "\n\n" + command["code"]


def save_command(command: dict, output_dir: str = DEFAULT_OUTPUT_DIR) -> str:
    """Write the command file as <output_dir>/<name-slug>.js. Returns the path."""
    os.makedirs(output_dir, exist_ok=True)
    file_name = f"{slugify(command['metadata']['name']) or 'command'}.js"
    path = os.path.join(output_dir, file_name)
    with open(path, "w", encoding="utf-8") as f:
        f.write(generate_command_file(command))
    return path


def summarize_command(command: dict) -> str:
    metadata = command["metadata"]
    validation = command["validation"]
    lines = [
        f"Command: {metadata['name']}",
        f"Category: {metadata['category']}",
        f"Author: {metadata['author']}",
        f"Validation Score: {validation['score']}/100",
    ]
    if validation["errors"]:
        lines.append("")
        lines.append("Validation Errors:")
        lines.extend(f"  - {e}" for e in validation["errors"])
    if validation["warnings"]:
        lines.append("")
        lines.append("Validation Warnings:")
        lines.extend(f"  - {w}" for w in validation["warnings"])
    return "\n".join(lines)


def _block_comment(title: str, text: str) -> list:
    body = [f" * {line.strip().replace('*/', '* /')}".rstrip() for line in text.splitlines()]
    return ["/**", f" * {title}:"] + body + [" */"]


def _display_date(value) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%a %b %d %Y")
    except ValueError:
        return comment_text(value)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Convert a single-command submission issue into a Level Up command file."
    )
    parser.add_argument("input", nargs="?", help="Issue JSON file (reads stdin when omitted)")
    parser.add_argument("output_dir", nargs="?", default=DEFAULT_OUTPUT_DIR,
                        help="Directory for the generated .js file (default: %(default)s)")
    parser.add_argument("--output", "-o", help="Also write the command JSON to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        issue = load_issue(cli_support.read_text_input(args.input))
    except MalformedInput as e:
        cli_support.print_summary(f"Error processing issue: {e}")
        return cli_support.EXIT_FAILURE

    command = convert_issue(issue)
    if command["validation"]["valid"]:
        command["filePath"] = save_command(command, args.output_dir)
        logger.info("Command saved to %s", command["filePath"])

    cli_support.emit_json(command, args.output)
    cli_support.print_summary(summarize_command(command))
    if not command["validation"]["valid"]:
        cli_support.print_summary("Command has validation errors and was not saved")
        return cli_support.EXIT_FAILURE
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
