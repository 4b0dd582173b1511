"""
Package Manager — Community Command Collections

PURPOSE:
    Bundle commands into a portable package the Level Up client can
    import, and read such packages back with integrity checks.

    A package is:
        {
          "version": "1.0.0",
          "packageInfo": {name, description, author, category, tags,
                          createdAt, commandCount, ...},
          "commands": [...],
          "checksum": sha256 of the canonical JSON of "commands"
        }

    The checksum always covers the commands exactly as they appear in the
    file. Exporting to the slimmer 'levelup' format therefore recomputes
    it over the slimmed commands, and import verifies it against whatever
    is in the file.

CALLED BY:
    The `collection-package` command-line tool (create / export / import /
    stats). package_from_collection() turns a materialized collection
    record into a package.
"""

import argparse
import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Optional

from . import cli_support
from .errors import MalformedInput, PackageIntegrityError

logger = logging.getLogger(__name__)

PACKAGE_VERSION = "1.0.0"
SUPPORTED_FORMATS = ("levelup", "json")

LEVELUP_COMMAND_FIELDS = (
    "name", "description", "code", "icon", "category", "tags", "author", "dynamicsVersion",
)

_HEADER_FIELDS = {
    "name": re.compile(r"//\s*Command Name:\s*(.+)", re.IGNORECASE),
    "description": re.compile(r"//\s*Description:\s*(.+)", re.IGNORECASE),
    "category": re.compile(r"//\s*Category:\s*(.+)", re.IGNORECASE),
    "author": re.compile(r"//\s*Author:\s*(.+)", re.IGNORECASE),
}
_GENERATED_HEADER_END = "\n */\n\n"


def create_package(commands: list, package_info: Optional[dict] = None, now: Optional[datetime] = None) -> dict:
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    package_info = package_info or {}
    sanitized = [sanitize_command(command, timestamp) for command in commands]

    info = {
        "name": "Community Command Package",
        "description": "",
        "author": "Community",
        "category": "mixed",
        "tags": [],
        "createdAt": timestamp,
    }
    info.update(package_info)
    info["commandCount"] = len(sanitized)

    return {
        "version": PACKAGE_VERSION,
        "packageInfo": info,
        "commands": sanitized,
        "checksum": generate_checksum(sanitized),
    }


def sanitize_command(command: dict, timestamp: str = "") -> dict:
    """Fill in defaults so every packaged command has the same shape."""
    name = command.get("name") or "Unnamed Command"
    code = command.get("code") or ""
    author = command.get("author") or "Unknown"
    metadata = command.get("metadata") or {}
    documentation = command.get("documentation") or {}

    return {
        "id": command.get("id") or hashlib.md5(f"{name}{code}{author}".encode("utf-8")).hexdigest()[:8],
        "name": name,
        "description": command.get("description") or "",
        "category": command.get("category") or "other",
        "code": code,
        "icon": command.get("icon") or "code",
        "tags": command.get("tags") or [],
        "author": author,
        "dynamicsVersion": command.get("dynamicsVersion") or "All versions",
        "documentation": {
            "usageInstructions": documentation.get("usageInstructions") or command.get("usageInstructions") or "",
            "prerequisites": documentation.get("prerequisites") or command.get("prerequisites") or "",
            "limitations": documentation.get("limitations") or command.get("limitations") or "",
        },
        "metadata": {
            "submittedAt": metadata.get("submittedAt") or command.get("submittedAt") or timestamp,
            "validated": bool(metadata.get("validated", command.get("validated", False))),
            "validationScore": metadata.get("validationScore", command.get("validationScore", 0)) or 0,
        },
    }


def generate_checksum(commands: list) -> str:
    canonical = json.dumps(commands, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def format_package(pkg: dict, fmt: str = "levelup", now: Optional[datetime] = None) -> dict:
    fmt = fmt.lower()
    if fmt == "json":
        return pkg
    if fmt != "levelup":
        raise ValueError(f"Unsupported export format: {fmt}")

    commands = [{field: command.get(field) for field in LEVELUP_COMMAND_FIELDS} for command in pkg["commands"]]
    return {
        "version": pkg["version"],
        "exportedAt": (now or datetime.now(timezone.utc)).isoformat(),
        "packageInfo": pkg.get("packageInfo", {}),
        "commands": commands,
        "checksum": generate_checksum(commands),
    }


def export_package(pkg: dict, path: str, fmt: str = "levelup", now: Optional[datetime] = None) -> str:
    """Write the package to `path` (".json" appended if missing). Returns the final path."""
    content = format_package(pkg, fmt, now)
    final_path = path if path.endswith(".json") else path + ".json"

    directory = os.path.dirname(os.path.abspath(final_path))
    os.makedirs(directory, exist_ok=True)
    with open(final_path, "w", encoding="utf-8") as f:
        json.dump(content, f, indent=2, ensure_ascii=False)
        f.write("\n")
    return final_path


def import_package(path: str, require_checksum: bool = False) -> dict:
    """
    Read and validate a package file. With require_checksum, a package whose
    checksum was stripped is refused instead of imported with a warning.
    """
    if not os.path.isfile(path):
        raise MalformedInput(f"Package file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            pkg = json.load(f)
    except json.JSONDecodeError as e:
        raise PackageIntegrityError(f"Invalid package file: {e}") from e

    validate_package(pkg, require_checksum)
    return pkg


def validate_package(pkg, require_checksum: bool = False) -> None:
    """Raise PackageIntegrityError when structure or checksum is wrong."""
    if not isinstance(pkg, dict):
        raise PackageIntegrityError("Package must be a JSON object")
    if not pkg.get("version"):
        raise PackageIntegrityError("Package missing version")

    commands = pkg.get("commands")
    if not isinstance(commands, list):
        raise PackageIntegrityError("Package missing commands array")
    if not commands:
        raise PackageIntegrityError("Package contains no commands")

    for index, command in enumerate(commands, start=1):
        if not isinstance(command, dict):
            raise PackageIntegrityError(f"Command {index} is not an object")
        if not command.get("name"):
            raise PackageIntegrityError(f"Command {index} missing name")
        if not command.get("code"):
            raise PackageIntegrityError(f"Command {index} missing code")

    checksum = pkg.get("checksum")
    if not checksum:
        if require_checksum:
            raise PackageIntegrityError("Package has no checksum and one is required")
        logger.warning("Package has no checksum; integrity not verified")
        return
    if generate_checksum(commands) != checksum:
        raise PackageIntegrityError("Package checksum mismatch - data may be corrupted")


def package_from_collection(collection: dict, now: Optional[datetime] = None) -> dict:
    """Package a materialized collection record (collections/<slug>.json)."""
    documentation = collection.get("documentation") or {}
    commands = []
    for command in collection.get("commands", []):
        commands.append({
            **command,
            "dynamicsVersion": collection.get("dynamicsVersion"),
            "usageInstructions": documentation.get("usageInstructions", ""),
            "prerequisites": documentation.get("prerequisites", ""),
            "limitations": documentation.get("limitations", ""),
            "submittedAt": collection.get("submittedAt", ""),
            "validated": True,
        })

    info = {
        "name": collection.get("name") or "Community Command Package",
        "description": collection.get("description", ""),
        "author": collection.get("author") or "Community",
        "category": collection.get("category") or "mixed",
        "tags": collection.get("tags") or [],
        "collectionId": collection.get("id"),
    }
    return create_package(commands, info, now)


def package_from_command_files(commands_dir: str, now: Optional[datetime] = None) -> dict:
    """
    Package every .js file under a directory (recursively, in path order),
    reading metadata from its header comments.
    """
    if not os.path.isdir(commands_dir):
        raise MalformedInput(f"Commands directory not found: {commands_dir}")

    commands = []
    for directory, subdirs, file_names in os.walk(commands_dir):
        subdirs.sort()
        for file_name in sorted(file_names):
            if not file_name.endswith(".js"):
                continue
            with open(os.path.join(directory, file_name), "r", encoding="utf-8") as f:
                content = f.read()
            commands.append(command_from_file(content, os.path.splitext(file_name)[0]))

    info = {
        "name": "Community Commands Package",
        "description": "Collection of Level Up community commands",
        "author": "Level Up Community",
        "category": "mixed",
    }
    return create_package(commands, info, now)


def command_from_file(content: str, default_name: str) -> dict:
    fields = {}
    for key, pattern in _HEADER_FIELDS.items():
        match = pattern.search(content)
        if match:
            fields[key] = match.group(1).strip()

    code = content
    if content.startswith("// Command Name:") and _GENERATED_HEADER_END in content:
        code = content.split(_GENERATED_HEADER_END, 1)[1]

    return {
        "name": fields.get("name", default_name),
        "description": fields.get("description", ""),
        "category": fields.get("category", "other"),
        "author": fields.get("author", "Unknown"),
        "code": code,
        "tags": [],
        "icon": "code",
    }


def generate_stats(pkg: dict) -> dict:
    commands = pkg.get("commands") or []
    categories = {}
    authors = {}
    tags = {}
    total_score = 0
    validated = 0

    for command in commands:
        category = command.get("category") or "other"
        categories[category] = categories.get(category, 0) + 1
        author = command.get("author") or "Unknown"
        authors[author] = authors.get(author, 0) + 1
        for tag in command.get("tags") or []:
            tags[tag] = tags.get(tag, 0) + 1

        score = (command.get("metadata") or {}).get("validationScore")
        if score:
            total_score += score
            validated += 1

    return {
        "totalCommands": len(commands),
        "categories": categories,
        "authors": authors,
        "tags": tags,
        "averageValidationScore": round(total_score / validated) if validated else 0,
        "validatedCommands": validated,
        "packageSize": len(json.dumps(pkg, ensure_ascii=False)),
        "createdAt": (pkg.get("packageInfo") or {}).get("createdAt"),
    }


def _format_stats(stats: dict) -> str:
    lines = [
        "Package Statistics",
        f"Total Commands: {stats['totalCommands']}",
        f"Average Validation Score: {stats['averageValidationScore']}",
        f"Package Size: {stats['packageSize'] / 1024:.2f} KB",
        "",
        "Categories:",
    ]
    lines.extend(f"  {name}: {count}" for name, count in sorted(stats["categories"].items()))
    lines.extend(["", "Authors:"])
    lines.extend(f"  {name}: {count}" for name, count in sorted(stats["authors"].items()))
    if stats["tags"]:
        lines.extend(["", "Popular Tags:"])
        popular = sorted(stats["tags"].items(), key=lambda item: (-item[1], item[0]))[:10]
        lines.extend(f"  {tag}: {count}" for tag, count in popular)
    return "\n".join(lines)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Level Up command package manager.")
    cli_support.add_common_arguments(parser)
    subparsers = parser.add_subparsers(dest="action", required=True)

    create = subparsers.add_parser("create", help="Create a package from command files or a collection")
    create.add_argument("source", nargs="?", default="./commands",
                        help="Commands directory, or a collection JSON with --collection")
    create.add_argument("output", nargs="?", default="./package.json")
    create.add_argument("--collection", action="store_true", help="Treat source as a collection record")
    create.add_argument("--format", default="levelup", choices=SUPPORTED_FORMATS)

    export = subparsers.add_parser("export", help="Re-export a package in another format")
    export.add_argument("input")
    export.add_argument("output")
    export.add_argument("--format", default="levelup", choices=SUPPORTED_FORMATS)

    imp = subparsers.add_parser("import", help="Import and validate a package")
    imp.add_argument("input")
    imp.add_argument("--require-checksum", action="store_true",
                     help="Refuse packages without a checksum (untrusted sources)")

    stats = subparsers.add_parser("stats", help="Show package statistics")
    stats.add_argument("input")

    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        if args.action == "create":
            if args.collection:
                pkg = package_from_collection(cli_support.load_json_file(args.source))
            else:
                pkg = package_from_command_files(args.source)
            path = export_package(pkg, args.output, args.format)
            cli_support.emit_json({"path": path, "commandCount": len(pkg["commands"]), "checksum": pkg["checksum"]})
            cli_support.print_summary(f"Package created: {path} ({len(pkg['commands'])} commands)")

        elif args.action == "export":
            pkg = import_package(args.input)
            path = export_package(pkg, args.output, args.format)
            cli_support.emit_json({"path": path, "format": args.format})
            cli_support.print_summary(f"Package exported: {path}")

        elif args.action == "import":
            pkg = import_package(args.input, require_checksum=args.require_checksum)
            cli_support.emit_json(pkg)
            cli_support.print_summary(
                f"Package imported successfully: {(pkg.get('packageInfo') or {}).get('name', 'unnamed')} "
                f"({len(pkg['commands'])} commands)"
            )

        else:
            pkg = import_package(args.input)
            package_stats = generate_stats(pkg)
            cli_support.emit_json(package_stats)
            cli_support.print_summary(_format_stats(package_stats))

    except (MalformedInput, PackageIntegrityError) as e:
        cli_support.print_summary(f"Package {args.action} failed: {e}")
        return cli_support.EXIT_FAILURE

    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
