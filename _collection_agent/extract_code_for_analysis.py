"""
Extract Code for Analysis — Community Command Collections

PURPOSE:
    Write each submitted command's JavaScript into its own file so that an
    external static-analysis engine (CodeQL in the CI workflow) can scan
    it. Nothing here executes the code; it is copied to disk with a header
    comment that says so.

    Output directory layout:
        <out_dir>/<command-slug>.js        one file per command with code
        <out_dir>/analysis-manifest.json   what was written, for the workflow

CALLED BY:
    pipeline_main.py (optional, when --extract-dir is given) and the
    `collection-extract-code` command-line tool. The engine's results come
    back through stage_3_static_findings.normalize_static_report().
"""

import argparse
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from . import cli_support
from .errors import MalformedInput
from .models import command_code, comment_text, slugify, unique_name

logger = logging.getLogger(__name__)

MANIFEST_NAME = "analysis-manifest.json"
MIN_EXPECTED_FILE_SIZE = 50

ANALYSIS_HEADER = """/**
 * SECURITY ANALYSIS - EXTRACTED CODE
 * Command Name: {name}
 * Description: {description}
 * Category: {category}
 * Author: {author}
 * Extracted for: CodeQL Security Analysis
 *
 * WARNING: This code is extracted for security analysis purposes.
 * Do not execute this code directly.
 */

"""


def extract_code_for_analysis(parsed: dict, out_dir: str, now: Optional[datetime] = None) -> dict:
    """
    Write every command that has code into out_dir, plus the manifest.

    Args:
        parsed: ParsedSubmission dict from stage 1.
        out_dir: Directory to write into (created if missing).
        now: Clock override for the manifest timestamp.

    Returns:
        dict with 'manifestPath', 'extractedFiles' and 'outputDir'.

    Raises:
        MalformedInput: the submission has no commands at all.
    """
    commands = parsed.get("commands") or []
    if not commands:
        raise MalformedInput("No commands found in collection")

    os.makedirs(out_dir, exist_ok=True)
    logger.info("Extracting %d commands for analysis into %s", len(commands), out_dir)

    extracted = []
    used_names = set()
    for index, command in enumerate(commands):
        code = command_code(command)
        if not code:
            logger.warning("Command %d has no code, skipping", index + 1)
            continue

        file_name = _unique_file_name(command, index, used_names)
        file_path = os.path.join(out_dir, file_name)
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(add_analysis_header(command, index))

        extracted.append({
            "fileName": file_name,
            "filePath": file_path,
            "commandName": command.get("name") or f"Command {index + 1}",
            "codeLength": len(code),
        })

    metadata = parsed.get("metadata") or {}
    manifest = {
        "collectionName": metadata.get("name") or "Unknown Collection",
        "author": metadata.get("author") or "Unknown",
        "commandCount": len(commands),
        "extractedFiles": extracted,
        "extractedAt": (now or datetime.now(timezone.utc)).isoformat(),
    }

    manifest_path = os.path.join(out_dir, MANIFEST_NAME)
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return {"manifestPath": manifest_path, "extractedFiles": extracted, "outputDir": out_dir}


def add_analysis_header(command: dict, index: int) -> str:
    header = ANALYSIS_HEADER.format(
        name=comment_text(command.get("name") or f"Command {index + 1}"),
        description=comment_text(command.get("description") or "No description provided"),
        category=comment_text(command.get("category") or "Unknown"),
        author=comment_text(command.get("author") or "Unknown"),
    )
    return header + command_code(command)


def validate_extracted_files(out_dir: str) -> dict:
    """Check that every file listed in the manifest is on disk."""
    manifest_path = os.path.join(out_dir, MANIFEST_NAME)
    if not os.path.isfile(manifest_path):
        raise MalformedInput(f"Analysis manifest not found in {out_dir}")

    with open(manifest_path, "r", encoding="utf-8") as f:
        manifest = json.load(f)

    results = {"valid": True, "errors": [], "warnings": [], "fileCount": 0, "totalCodeSize": 0}
    for info in manifest.get("extractedFiles", []):
        if not os.path.isfile(info["filePath"]):
            results["errors"].append(f"Missing extracted file: {info['fileName']}")
            results["valid"] = False
            continue

        with open(info["filePath"], "r", encoding="utf-8") as f:
            size = len(f.read())
        if size < MIN_EXPECTED_FILE_SIZE:
            results["warnings"].append(f"File {info['fileName']} seems too small ({size} chars)")
        results["fileCount"] += 1
        results["totalCodeSize"] += size

    return results


def _unique_file_name(command: dict, index: int, used: set) -> str:
    base = slugify(command.get("name") or f"command-{index + 1}") or f"command-{index + 1}"
    return unique_name(base, index + 1, used, ".js")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Extract submitted command code into files for static analysis."
    )
    parser.add_argument("input", help="Parsed submission JSON (output of collection-parse)")
    parser.add_argument("output_dir", nargs="?", default="./codeql-analysis",
                        help="Directory to write extracted files into (default: %(default)s)")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        result = extract_code_for_analysis(cli_support.load_json_file(args.input), args.output_dir)
    except MalformedInput as e:
        cli_support.print_summary(f"Code extraction failed: {e}")
        return cli_support.EXIT_FAILURE

    validation = validate_extracted_files(args.output_dir)
    result["validation"] = validation
    cli_support.emit_json(result)
    cli_support.print_summary(
        f"Extracted {validation['fileCount']} file(s), "
        f"{validation['totalCodeSize']} characters, into {args.output_dir}"
    )
    for warning in validation["warnings"]:
        cli_support.print_summary(f"  warning: {warning}")
    return cli_support.EXIT_OK if validation["valid"] else cli_support.EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
