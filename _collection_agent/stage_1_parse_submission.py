"""
Stage 1: Parse & Validate — Community Command Collections

PURPOSE:
    This is the first stage of the approval pipeline. It takes the raw GitHub
    Issue (created from the share-command-collection.yml template) and extracts
    structured fields from it: collection metadata, the commands payload,
    documentation, and the submitter's contact handle. It then runs a local
    validation pass that produces errors, warnings and a 0-100 score.

    This stage is a cheap gatekeeper. It makes zero network calls, and it
    never raises on bad submission content: a missing field becomes an empty
    string, an unparsable commands payload becomes an empty list, and the
    validation pass is what records the problem.

CALLED BY:
    pipeline_main.py, and the `collection-parse` / `collection-validate`
    command-line tools (this module's main() and validate_main()).

DEPENDS ON:
    The GitHub Issue body format produced by the submission template, which
    renders form responses as "### Label" headers. Older hand-written issues
    use "**Label:** value" instead; both are accepted.

DESIGN DECISIONS:
    - The body is tokenized once into a label -> content map rather than
      matched field by field with ad hoc regexes. Labels are normalized
      (case, hyphens, underscores, trailing colon) so "collection-name",
      "Collection Name" and "**Collection Name:**" all resolve to the same
      field, and each field also has a short alias list.
    - Headers inside ``` fences are ignored, so code in the commands payload
      can never be mistaken for a new section.
    - Category matching is exact (case-insensitive) against a closed list,
      defaulting to "Other". No fuzzy matching: downstream index counts
      must stay stable across resubmissions.
    - The contact handle is normalized into the directory key used by the
      store, but its existence is not checked here. Identity verification is
      done by the workflow before materialization.

RETURNS:
    A ParsedSubmission dict (see parse_submission).
"""

import argparse
import json
import logging
import re

from . import cli_support
from .errors import MalformedInput

logger = logging.getLogger(__name__)


SUPPORTED_CATEGORIES = [
    "Form Actions",
    "Navigation",
    "Data Management",
    "UI Enhancement",
    "Development Tools",
    "Workflow Automation",
    "Reporting & Analytics",
    "User Management",
    "Business Process",
    "Other",
]

# Canonical field label -> additional labels that mean the same thing.
# Every entry is already in normalized form (see _normalize_label).
FIELD_ALIASES = {
    "collection name": ("name",),
    "description": ("collection description",),
    "category": (),
    "tags": (),
    "command count": ("number of commands",),
    "dynamics version": (),
    "author attribution": ("author",),
    "contact info": ("contact information", "contact", "github username"),
    "commands json": ("commands",),
    "usage instructions": ("usage", "how to use"),
    "prerequisites": ("requirements", "setup"),
    "limitations": ("known issues", "caveats"),
}

_HASH_HEADER = re.compile(r"^###\s+(.+?)\s*$")
_BOLD_HEADER = re.compile(r"^\*\*(.+?)(?::\*\*|\*\*:)\s*(.*)$")
_SECTION_BREAK = re.compile(r"^##\s")
_FENCE = re.compile(r"^\s*```")

_FENCED_BLOCK = re.compile(r"```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)
_TITLE_PREFIX = re.compile(r"\[COLLECTION\]\s*(.+)", re.IGNORECASE)

_DYNAMIC_EXECUTION = (
    (re.compile(r"\beval\s*\("), "dangerous eval() function"),
    (re.compile(r"\bnew\s+Function\s*\("), "dangerous Function constructor"),
)
_HARDCODED_URL = re.compile(r"https?://[a-zA-Z0-9.-]+", re.IGNORECASE)


def parse_submission(issue: dict) -> dict:
    """
    Parse a GitHub Issue from the collection template into a ParsedSubmission.

    This is the main public function in this file. It is a pure function of
    the issue payload: reprocessing the same issue always yields the same
    result.

    Args:
        issue: The GitHub issue payload. Keys used: 'title', 'body',
               'number', 'html_url', 'created_at', and 'user.login'.

    Returns:
        dict with keys:
            - 'metadata' (dict): name, description, category, tags,
              commandCount, dynamicsVersion, author, submittedBy, submittedAt
            - 'commands' (list[dict]): the submitted command objects
            - 'documentation' (dict): description, usageInstructions,
              prerequisites, limitations
            - 'contactInfo' (str): normalized GitHub handle ('' if missing)
            - 'issueInfo' (dict): number, url, submittedAt, submittedBy
            - 'validation' (dict): valid, errors, warnings, score
    """
    body = issue.get("body") or ""
    title = issue.get("title") or ""
    submitter = (issue.get("user") or {}).get("login") or ""
    submitted_at = issue.get("created_at") or ""

    # -----------------------------------------------------------------------
    # STEP 1: Tokenize the body once into labelled sections
    # -----------------------------------------------------------------------

    sections = split_sections(body)

    # -----------------------------------------------------------------------
    # STEP 2: Extract structured fields
    # -----------------------------------------------------------------------

    command_count_raw = lookup_field(sections, "command-count")
    try:
        command_count = int(command_count_raw.strip())
    except ValueError:
        command_count = 0

    metadata = {
        "name": lookup_field(sections, "collection-name") or extract_title_name(title),
        "description": lookup_field(sections, "description"),
        "category": normalize_category(lookup_field(sections, "category")),
        "tags": split_tags(lookup_field(sections, "tags")),
        "commandCount": command_count,
        "dynamicsVersion": lookup_field(sections, "dynamics-version") or "All versions",
        "author": lookup_field(sections, "author-attribution") or submitter,
        "submittedBy": submitter,
        "submittedAt": submitted_at,
    }

    commands = _parse_commands_payload(lookup_field(sections, "commands-json"))
    contact_info = _normalize_contact(lookup_field(sections, "contact-info"))

    documentation = {
        "description": metadata["description"],
        "usageInstructions": lookup_field(sections, "usage-instructions"),
        "prerequisites": lookup_field(sections, "prerequisites"),
        "limitations": lookup_field(sections, "limitations"),
    }

    # -----------------------------------------------------------------------
    # STEP 3: Validate the parsed snapshot
    # -----------------------------------------------------------------------

    validation = validate_submission(metadata, commands, contact_info, body)

    return {
        "metadata": metadata,
        "commands": commands,
        "documentation": documentation,
        "contactInfo": contact_info,
        "issueInfo": {
            "number": issue.get("number"),
            "url": issue.get("html_url") or "",
            "submittedAt": submitted_at,
            "submittedBy": submitter,
        },
        "validation": validation,
    }


# ---------------------------------------------------------------------------
# FIELD EXTRACTION
# ---------------------------------------------------------------------------


def split_sections(body: str) -> dict:
    """
    Tokenize a header-delimited body into a normalized label -> content map.

    A section starts at a "### Label" line or a "**Label:** value" line and
    runs until the next such header, a "## " heading, or the end of the
    body. Lines inside code fences never start a section. When a label
    appears twice the first occurrence wins.
    """
    sections = {}
    current_label = None
    current_lines = []
    in_fence = False

    def _flush():
        if current_label is None:
            return
        value = "\n".join(current_lines).strip()
        if value == "_No response_":
            value = ""
        sections.setdefault(current_label, value)

    for line in (body or "").replace("\r\n", "\n").split("\n"):
        # A line like ```json {...}``` opens and closes on itself.
        if _FENCE.match(line) and line.count("```") % 2 == 1:
            in_fence = not in_fence
            current_lines.append(line)
            continue

        if not in_fence:
            hash_match = _HASH_HEADER.match(line)
            bold_match = None if hash_match else _BOLD_HEADER.match(line)

            if hash_match or bold_match:
                _flush()
                if hash_match:
                    current_label = _normalize_label(hash_match.group(1))
                    current_lines = []
                else:
                    current_label = _normalize_label(bold_match.group(1))
                    current_lines = [bold_match.group(2)]
                continue

            if _SECTION_BREAK.match(line):
                _flush()
                current_label = None
                current_lines = []
                continue

        current_lines.append(line)

    _flush()
    return sections


def extract_field(body: str, field_name: str) -> str:
    """
    Return the content of the named field, or '' when it is absent.

    `field_name` may be given in any of the accepted spellings
    ("collection-name", "Collection Name") or as one of its aliases.
    """
    return lookup_field(split_sections(body), field_name)


def extract_commands(body: str) -> list:
    """
    Return the list of command objects in the commands field.

    The payload may be raw or fenced JSON shaped as {"commands": [...]} or
    as a bare array. Any parse failure yields [] (the validation pass
    reports it as an error).
    """
    return _parse_commands_payload(extract_field(body, "commands-json"))


def extract_contact(body: str) -> str:
    """Return the contact handle with '@' and whitespace removed, lowercased."""
    return _normalize_contact(extract_field(body, "contact-info"))


def extract_tags(body: str) -> list:
    return split_tags(extract_field(body, "tags"))


def lookup_field(sections: dict, field_name: str) -> str:
    """Find a field in an already-split body under any of its accepted labels."""
    for label in _candidate_labels(field_name):
        value = sections.get(label)
        if value:
            return value
    return ""


def split_tags(raw: str) -> list:
    """Comma-separated tags, trimmed, first spelling kept for case-insensitive repeats."""
    tags = []
    seen = set()
    for tag in (raw or "").split(","):
        tag = tag.strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            tags.append(tag)
    return tags


def normalize_category(category: str) -> str:
    """Exact case-insensitive match against SUPPORTED_CATEGORIES, else 'Other'."""
    if not category:
        return "Other"
    wanted = category.strip().lower()
    for supported in SUPPORTED_CATEGORIES:
        if supported.lower() == wanted:
            return supported
    return "Other"


def extract_title_name(title: str) -> str:
    """Strip the "[COLLECTION]" prefix the template puts on issue titles."""
    match = _TITLE_PREFIX.search(title or "")
    return match.group(1).strip() if match else (title or "").strip()


# ---------------------------------------------------------------------------
# VALIDATION
# ---------------------------------------------------------------------------


def validate_submission(
    metadata: dict,
    commands: list,
    contact_info: str,
    body: str
) -> dict:
    """
    Run the local validation pass over a parsed submission.

    Args:
        metadata: The 'metadata' dict built by parse_submission
        commands: The parsed command list
        contact_info: Normalized contact handle
        body: The raw issue body (used only for the checklist check)

    Returns:
        dict with 'valid' (bool, True iff there are no errors), 'errors',
        'warnings' and 'score' (0-100).
    """
    errors = []
    warnings = []

    # -----------------------------------------------------------------------
    # Required fields
    # -----------------------------------------------------------------------

    if not metadata.get("name"):
        errors.append("Collection name is required")
    if not metadata.get("description"):
        errors.append("Collection description is required")
    if not contact_info:
        errors.append("Contact information (GitHub username) is required")
    if not commands:
        errors.append("Commands JSON is required and must contain at least one command")

    # -----------------------------------------------------------------------
    # Per-command checks
    # -----------------------------------------------------------------------
    # Dynamic code execution is promoted straight to an error here because
    # no amount of scoring elsewhere should let it through. Hardcoded URLs
    # are only a warning; the risk scanner weighs them properly.
    # -----------------------------------------------------------------------

    for position, command in enumerate(commands, start=1):
        if not _text(command.get("name")):
            errors.append(f"Command {position} is missing a name")

        code = command.get("code")
        if not _text(code):
            errors.append(f"Command {position} is missing JavaScript code")
            continue

        for pattern, label in _DYNAMIC_EXECUTION:
            if pattern.search(code):
                errors.append(f"Command {position} contains {label}")

        if _HARDCODED_URL.search(code):
            warnings.append(f"Command {position} contains hardcoded URLs")

    declared = metadata.get("commandCount") or 0
    if commands and declared and declared != len(commands):
        warnings.append(
            f"Declared command count ({declared}) doesn't match actual count "
            f"({len(commands)})"
        )

    if "- [x]" not in body and "- [X]" not in body:
        warnings.append("Safety checklist not completed")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "score": calculate_validation_score(len(errors), len(warnings), len(commands)),
    }


def calculate_validation_score(error_count: int, warning_count: int, command_count: int) -> int:
    score = 100 - error_count * 25 - warning_count * 10
    if command_count >= 3:
        score += 5
    return max(0, min(100, score))


def summarize_submission(parsed: dict) -> str:
    metadata = parsed.get("metadata", {})
    validation = parsed.get("validation", {})
    lines = [
        "Collection Parsed:",
        f"Collection: {metadata.get('name', '')}",
        f"Author: {metadata.get('author', '')}",
        f"Category: {metadata.get('category', '')}",
        f"Commands: {len(parsed.get('commands', []))}",
        f"Validation Score: {validation.get('score', 0)}/100",
        f"Contact: {parsed.get('contactInfo', '')}",
    ]
    if validation.get("errors"):
        lines.append("")
        lines.append("Validation Errors:")
        lines.extend(f"  - {e}" for e in validation["errors"])
    if validation.get("warnings"):
        lines.append("")
        lines.append("Validation Warnings:")
        lines.extend(f"  - {w}" for w in validation["warnings"])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS (private to this module)
# ---------------------------------------------------------------------------


def _normalize_label(label: str) -> str:
    label = label.strip().strip("*").strip().rstrip(":").strip()
    label = re.sub(r"[-_]+", " ", label.lower())
    return re.sub(r"\s+", " ", label)


def _candidate_labels(field_name: str) -> tuple:
    key = _normalize_label(field_name)
    for canonical, aliases in FIELD_ALIASES.items():
        if key == canonical or key in aliases:
            return (canonical,) + aliases
    return (key,)


def _payload_candidates(raw: str) -> list:
    """The fenced block first when the payload opens with a fence, else the raw text first."""
    text = raw.strip()
    candidates = [text]
    match = _FENCED_BLOCK.search(text)
    if match:
        candidates.insert(0 if text.startswith("```") else 1, match.group(1).strip())
    return candidates


def _parse_commands_payload(raw: str) -> list:
    if not raw:
        return []

    data = None
    last_error = None
    for candidate in _payload_candidates(raw):
        try:
            data = json.loads(candidate)
            break
        except json.JSONDecodeError as e:
            last_error = e
    else:
        logger.warning("Failed to parse commands JSON: %s", last_error)
        return []

    if isinstance(data, dict) and isinstance(data.get("commands"), list):
        items = data["commands"]
    elif isinstance(data, list):
        items = data
    else:
        logger.warning("Invalid commands JSON structure: %s", type(data).__name__)
        return []

    commands = [item for item in items if isinstance(item, dict)]
    if len(commands) != len(items):
        logger.warning("Dropped %d non-object entries from commands JSON",
                       len(items) - len(commands))
    return commands


def _normalize_contact(raw: str) -> str:
    if not raw:
        return ""
    return re.sub(r"[@\s]", "", raw).lower()


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def load_issue(text: str) -> dict:
    """Accept a GitHub issue JSON payload, or a bare Markdown body."""
    stripped = text.strip()
    if not stripped:
        raise MalformedInput("No issue JSON provided")
    if stripped.startswith("{"):
        try:
            issue = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise MalformedInput(f"Issue JSON could not be parsed: {e}") from e
        if isinstance(issue, dict):
            return issue
    return {"title": "", "body": text}


# ---------------------------------------------------------------------------
# COMMAND-LINE ENTRY POINTS
# ---------------------------------------------------------------------------


def _build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("input", nargs="?", help="Issue JSON file (reads stdin when omitted)")
    parser.add_argument("--output", "-o", help="Also write the JSON result to this file")
    cli_support.add_common_arguments(parser)
    return parser


def main(argv=None) -> int:
    parser = _build_parser("Parse a collection submission issue into structured JSON.")
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        issue = load_issue(cli_support.read_text_input(args.input))
    except MalformedInput as e:
        cli_support.print_summary(f"Error parsing issue: {e}")
        parser.print_usage()
        return cli_support.EXIT_FAILURE

    parsed = parse_submission(issue)
    cli_support.emit_json(parsed, args.output)
    cli_support.print_summary(summarize_submission(parsed))
    return cli_support.EXIT_OK


def validate_main(argv=None) -> int:
    """Like main(), but exits non-zero when the submission fails validation."""
    parser = _build_parser("Validate a collection submission; exit 1 when invalid.")
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        payload = load_issue(cli_support.read_text_input(args.input))
    except MalformedInput as e:
        cli_support.print_summary(f"Error reading submission: {e}")
        return cli_support.EXIT_FAILURE

    # An already-parsed submission carries its own validation snapshot.
    parsed = payload if "validation" in payload else parse_submission(payload)
    validation = parsed["validation"]

    cli_support.emit_json(validation, args.output)
    cli_support.print_summary(summarize_submission(parsed))
    return cli_support.EXIT_OK if validation.get("valid") else cli_support.EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
