"""
Stage 6: Materialize Collection — Community Command Collections

PURPOSE:
    Persist an approved submission into the per-author store:
      1. Create the author namespace (no-op if it exists)
      2. Write the full collection record, the client-import subset and one
         .js file per command with a generated header
      3. Upsert the collection into the author's profile, recompute the
         profile stats from scratch, and award any newly earned badges
      4. Rebuild the global index from every author namespace

CALLED BY:
    pipeline_main.py (only after an AUTO_APPROVE decision) and the
    `collection-materialize` command-line tool (which also accepts an
    explicit --override for maintainer-approved submissions).

DESIGN DECISIONS:
    - Ids are content hashes, so reprocessing the same issue overwrites the
      same files instead of adding a duplicate:
          collection id = md5("<name>-<submittedBy>-<issueNumber>")[:8]
          command id    = md5("<name or cmd-i>-<first 100 chars of code>")[:8]
    - Files are named by slug. A second collection with the same name from
      the same author gets "<slug>-<id>" instead of replacing the first, and
      command files live under commands/<collection stem>/ so two
      collections never share a .js file.
    - Header values pasted into generated comments are flattened to one line
      with "*/" broken up; only the command's own code is executable text.
    - Every timestamp comes from the `now` argument. Two runs with the same
      input and the same `now` write byte-identical files.
    - Profile stats are recomputed from the full collection list, never
      incremented. Badges are only ever appended.
    - The index is rebuilt by scanning every profile, never patched.
    - Writes are last-write-wins; concurrent runs for one author are
      serialized by CollectionStore.author_lock().
"""

import argparse
import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from typing import Optional

from . import cli_support, config
from .collection_store import CollectionStore
from .errors import FilesystemConflict, MalformedInput, MaterializationRefused
from .models import AUTO_APPROVE, command_code, comment_text, slugify, unique_name

logger = logging.getLogger(__name__)

# GitHub username shape: alphanumerics and single inner hyphens, max 39.
HANDLE_PATTERN = re.compile(r"^[a-z0-9](?:-?[a-z0-9]){0,38}$")

COLLECTION_VERSION = "1.0.0"
RECENT_COLLECTIONS_LIMIT = 20

BADGES = [
    {
        "id": "first-collection",
        "name": "First Collection",
        "description": "Submitted your first command collection",
        "icon": "🎉",
        "stat": "totalCollections",
        "threshold": 1,
    },
    {
        "id": "prolific-contributor",
        "name": "Prolific Contributor",
        "description": "Submitted 5 or more collections",
        "icon": "🏆",
        "stat": "totalCollections",
        "threshold": 5,
    },
    {
        "id": "command-master",
        "name": "Command Master",
        "description": "Contributed 20 or more commands",
        "icon": "⭐",
        "stat": "totalCommands",
        "threshold": 20,
    },
]


def materialize_collection(
    parsed: dict,
    store: Optional[CollectionStore] = None,
    decision=None,
    override: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """
    Write an approved submission into the store.

    Args:
        parsed: ParsedSubmission dict from stage 1.
        store: Target store. Defaults to CollectionStore(COLLECTIONS_DIR).
        decision: ApprovalDecision (or its dict form) from stage 5.
        override: Maintainer approval; materialize whatever the decision says.
        now: Clock override for every timestamp written.

    Returns:
        dict describing what was written: username, collectionId, paths and
        commandFiles.

    Raises:
        MaterializationRefused: not approved, or the contact handle is not a
                                usable GitHub username.
    """
    recommendation = _recommendation_of(decision)
    if not override and recommendation != AUTO_APPROVE:
        raise MaterializationRefused(
            f"Collection is not approved for materialization (decision: {recommendation or 'none'})"
        )

    username = (parsed.get("contactInfo") or "").strip().lower()
    if not HANDLE_PATTERN.match(username):
        raise MaterializationRefused(f"Contact handle is not a valid GitHub username: {username!r}")

    commands = parsed.get("commands") or []
    if not commands:
        raise MaterializationRefused("Collection has no commands to materialize")

    store = store or CollectionStore()
    timestamp = (now or datetime.now(timezone.utc)).isoformat()

    with store.author_lock(username):
        user_dir = store.namespace(username)
        written = _write_collection_files(store, username, parsed, timestamp, recommendation == AUTO_APPROVE)
        _update_profile(store, username, parsed, written, timestamp)

    index = rebuild_index(store, now=now)

    logger.info("Materialized collection %s for %s (%d commands)",
                written["collectionId"], username, written["totalCommands"])

    return {
        "username": username,
        "userDir": user_dir,
        "collectionId": written["collectionId"],
        "collectionPath": written["collectionPath"],
        "importPath": written["importPath"],
        "commandsDir": written["commandsDir"],
        "commandFiles": written["commandFiles"],
        "totalCommands": written["totalCommands"],
        "indexPath": store.index_path,
        "totalCollectionsInIndex": index["totalCollections"],
    }


def generate_collection_id(parsed: dict) -> str:
    metadata = parsed.get("metadata") or {}
    issue_number = (parsed.get("issueInfo") or {}).get("number")
    data = f"{metadata.get('name', '')}-{metadata.get('submittedBy', '')}-{'' if issue_number is None else issue_number}"
    return hashlib.md5(data.encode("utf-8")).hexdigest()[:8]


def generate_command_id(command: dict, index: int) -> str:
    data = f"{command.get('name') or f'cmd-{index}'}-{command_code(command)[:100]}"
    return hashlib.md5(data.encode("utf-8")).hexdigest()[:8]


def collection_file_base(store: CollectionStore, username: str, collection: dict) -> str:
    """
    File stem for a collection inside its author namespace.

    Normally the name slug. When <slug>.json already holds a different
    collection (same name, another issue) the id is appended so neither
    record overwrites the other. Reprocessing an issue resolves to the same
    stem every time.
    """
    slug = slugify(collection["name"]) or collection["id"]
    path = os.path.join(store.collections_dir(username), f"{slug}.json")
    if not os.path.isfile(path):
        return slug

    try:
        existing = store.read_json(path)
    except MalformedInput as e:
        logger.warning("Unreadable collection file %s, writing beside it: %s", path, e)
        existing = None
    if isinstance(existing, dict) and existing.get("id") == collection["id"]:
        return slug
    return f"{slug}-{collection['id']}"


def build_collection_record(parsed: dict, timestamp: str, auto_approved: bool = True) -> dict:
    metadata = parsed.get("metadata") or {}
    issue_info = parsed.get("issueInfo") or {}
    return {
        "id": generate_collection_id(parsed),
        "name": metadata.get("name", ""),
        "description": metadata.get("description", ""),
        "category": metadata.get("category", "Other"),
        "tags": metadata.get("tags") or [],
        "author": metadata.get("author", ""),
        "submittedBy": metadata.get("submittedBy", ""),
        "submittedAt": metadata.get("submittedAt", ""),
        "processedAt": timestamp,
        "dynamicsVersion": metadata.get("dynamicsVersion", ""),
        "commandCount": len(parsed.get("commands") or []),
        "autoApproved": auto_approved,
        "version": COLLECTION_VERSION,
        "source": {
            "issueNumber": issue_info.get("number"),
            "issueUrl": issue_info.get("url", ""),
            "repository": config.SOURCE_REPOSITORY,
        },
        "documentation": parsed.get("documentation") or {},
        "stats": {"downloads": 0, "rating": 0, "votes": 0},
        "commands": [
            {
                "id": generate_command_id(command, index),
                "name": command.get("name", ""),
                "description": command.get("description") or "",
                "category": command.get("category") or metadata.get("category", "Other"),
                "code": command_code(command),
                "icon": command.get("icon") or "code",
                "tags": command.get("tags") or [],
                "author": command.get("author") or metadata.get("author", ""),
                "version": COLLECTION_VERSION,
                "createdAt": timestamp,
            }
            for index, command in enumerate(parsed.get("commands") or [])
        ],
    }


def build_import_data(collection: dict, timestamp: str) -> dict:
    """The subset the Level Up client imports directly."""
    return {
        "version": COLLECTION_VERSION,
        "exportedAt": timestamp,
        "source": config.SOURCE_REPOSITORY,
        "collection": {
            "name": collection["name"],
            "description": collection["description"],
            "author": collection["author"],
            "version": collection["version"],
        },
        "commands": [
            {
                "name": command["name"],
                "description": command["description"],
                "code": command["code"],
                "icon": command["icon"],
            }
            for command in collection["commands"]
        ],
    }


def build_command_file(command: dict, collection: dict, username: str) -> str:
    """Header comment plus the command's code. Every header value is flattened to one comment-safe line."""
    page = f"{config.SITE_BASE_URL}/collections/{username}/{slugify(collection['name'])}"
    description = comment_text(command["description"] or "No description provided")
    collection_name = comment_text(collection["name"])
    header = f"""// Command Name: {comment_text(command['name'])}
// Description: {description}
// Category: {comment_text(command['category'])}
// Author: {comment_text(command['author'])}
// Collection: {collection_name}
// Collection ID: {collection['id']}
// Command ID: {command['id']}
// Version: {command['version']}
// Source: {comment_text(collection['source']['issueUrl'])}
// Auto-approved: {'true' if collection['autoApproved'] else 'false'}
// Processed: {collection['processedAt']}

/**
 * {description}
 *
 * Part of collection: {collection_name}
 *
 * Usage: Run this command from Level Up for Dynamics 365
 *
 * For more commands from this collection, visit:
 * {page}
 */

"""
    return header + command["code"]


def award_badges(profile: dict, timestamp: str) -> list:
    """
    Append every badge the profile's stats now qualify for and it does not
    already hold. Existing badges are never removed. Returns the new ones.
    """
    held = {badge.get("id") for badge in profile.get("badges", [])}
    stats = profile.get("stats", {})

    earned = []
    for badge in BADGES:
        if badge["id"] in held:
            continue
        if stats.get(badge["stat"], 0) >= badge["threshold"]:
            earned.append({
                "id": badge["id"],
                "name": badge["name"],
                "description": badge["description"],
                "icon": badge["icon"],
                "awardedAt": timestamp,
            })

    profile["badges"] = list(profile.get("badges", [])) + earned
    return earned


def recompute_profile_stats(profile: dict) -> dict:
    stats = dict(profile.get("stats") or {})
    collections = profile.get("collections") or []
    stats["totalCollections"] = len(collections)
    stats["totalCommands"] = sum(int(c.get("commandCount", 0) or 0) for c in collections)
    stats.setdefault("totalDownloads", 0)
    stats.setdefault("avgRating", 0)
    profile["stats"] = stats
    return stats


def rebuild_index(store: CollectionStore, now: Optional[datetime] = None) -> dict:
    """
    Rebuild <base>/index.json from every profile in the store.

    recentCollections keeps the 20 most recently submitted collections,
    newest first; equal timestamps are ordered by username, then id.
    """
    timestamp = (now or datetime.now(timezone.utc)).isoformat()

    with store.index_lock():
        index = {
            "generatedAt": timestamp,
            "totalUsers": 0,
            "totalCollections": 0,
            "totalCommands": 0,
            "users": [],
            "recentCollections": [],
            "categories": {},
            "tags": {},
        }

        recent = []
        for profile in store.iter_profiles():
            stats = profile.get("stats", {})
            index["users"].append({
                "username": profile.get("username"),
                "displayName": profile.get("displayName"),
                "totalCollections": stats.get("totalCollections", 0),
                "totalCommands": stats.get("totalCommands", 0),
                "badges": len(profile.get("badges", [])),
                "joinedAt": profile.get("joinedAt"),
            })
            index["totalCollections"] += stats.get("totalCollections", 0)
            index["totalCommands"] += stats.get("totalCommands", 0)

            for collection in profile.get("collections", []):
                recent.append({
                    **collection,
                    "username": profile.get("username"),
                    "displayName": profile.get("displayName"),
                })
                category = collection.get("category") or "Other"
                index["categories"][category] = index["categories"].get(category, 0) + 1
                for tag in collection.get("tags") or []:
                    index["tags"][tag] = index["tags"].get(tag, 0) + 1

        index["totalUsers"] = len(index["users"])

        # Two stable sorts: tie-break key first, then newest first.
        recent.sort(key=lambda c: (c.get("username") or "", c.get("id") or ""))
        recent.sort(key=lambda c: _timestamp_key(c.get("submittedAt")), reverse=True)
        index["recentCollections"] = recent[:RECENT_COLLECTIONS_LIMIT]

        store.write_json(store.index_path, index)

    return index


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _recommendation_of(decision) -> Optional[str]:
    if decision is None:
        return None
    if isinstance(decision, dict):
        return decision.get("recommendation")
    return getattr(decision, "recommendation", None)


def _write_collection_files(
    store: CollectionStore, username: str, parsed: dict, timestamp: str, auto_approved: bool
) -> dict:
    collection = build_collection_record(parsed, timestamp, auto_approved)
    base = collection_file_base(store, username, collection)

    collection_file = f"{base}.json"
    collection_path = os.path.join(store.collections_dir(username), collection_file)
    store.write_json(collection_path, collection)

    import_path = os.path.join(store.collections_dir(username), f"{base}-import.json")
    store.write_json(import_path, build_import_data(collection, timestamp))

    commands_dir = store.commands_dir(username, base)
    command_files = []
    used = set()
    for index, command in enumerate(collection["commands"]):
        stem = slugify(command["name"] or f"command-{index + 1}") or f"command-{index + 1}"
        file_name = unique_name(stem, index + 1, used, ".js")

        content = build_command_file(command, collection, username)
        path = os.path.join(commands_dir, file_name)
        store.write_text(path, content)
        command_files.append({
            "id": command["id"],
            "name": command["name"],
            "fileName": file_name,
            "path": path,
            "size": len(content),
        })

    return {
        "collection": collection,
        "collectionId": collection["id"],
        "collectionFile": collection_file,
        "collectionPath": collection_path,
        "importPath": import_path,
        "commandsDir": commands_dir,
        "commandFiles": command_files,
        "totalCommands": len(collection["commands"]),
    }


def _update_profile(store: CollectionStore, username: str, parsed: dict, written: dict, timestamp: str) -> dict:
    metadata = parsed.get("metadata") or {}
    profile = store.load_profile(username)
    if profile is None:
        profile = {
            "username": username,
            "displayName": metadata.get("author") or username,
            "joinedAt": timestamp,
            "collections": [],
            "stats": {"totalCollections": 0, "totalCommands": 0, "totalDownloads": 0, "avgRating": 0},
            "badges": [],
            "bio": "",
            "website": "",
            "social": {},
        }

    ref = {
        "id": written["collectionId"],
        "name": metadata.get("name", ""),
        "description": metadata.get("description", ""),
        "category": metadata.get("category", "Other"),
        "commandCount": written["totalCommands"],
        "submittedAt": metadata.get("submittedAt", ""),
        "processedAt": timestamp,
        "fileName": written["collectionFile"],
        "tags": metadata.get("tags") or [],
    }

    collections = profile.setdefault("collections", [])
    for position, existing in enumerate(collections):
        if existing.get("id") == ref["id"]:
            collections[position] = ref
            break
    else:
        collections.append(ref)

    recompute_profile_stats(profile)
    earned = award_badges(profile, timestamp)
    for badge in earned:
        logger.info("Awarded badge %s to %s", badge["id"], username)

    store.save_profile(profile)
    return profile


def _timestamp_key(value) -> float:
    if not value:
        return float("-inf")
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Write an approved collection into the per-author collection store."
    )
    parser.add_argument("input", help="Parsed submission JSON (output of collection-parse)")
    parser.add_argument("collections_dir", nargs="?", default=config.COLLECTIONS_DIR,
                        help="Root of the collection store (default: %(default)s)")
    parser.add_argument("--decision", help="Approval decision JSON (output of collection-decide)")
    parser.add_argument("--override", action="store_true",
                        help="Materialize regardless of the decision (maintainer approval)")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        parsed = cli_support.load_json_file(args.input)
        decision = cli_support.load_optional_json_file(args.decision)
        result = materialize_collection(
            parsed,
            store=CollectionStore(args.collections_dir),
            decision=decision,
            override=args.override,
        )
    except (MalformedInput, MaterializationRefused, FilesystemConflict) as e:
        cli_support.print_summary(f"Collection organization failed: {e}")
        return cli_support.EXIT_FAILURE

    cli_support.emit_json(result)
    cli_support.print_summary(
        "Collection Organization Complete:\n"
        f"Username: {result['username']}\n"
        f"Collection: {result['collectionPath']}\n"
        f"Commands: {len(result['commandFiles'])} files created\n"
        f"Collection ID: {result['collectionId']}"
    )
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
