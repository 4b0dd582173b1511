"""Shared fixtures: sample GitHub issues, a temporary collection store, a fixed clock."""
import json
import logging
from datetime import datetime, timezone

import pytest

from _collection_agent.collection_store import CollectionStore
from _collection_agent.stage_1_parse_submission import parse_submission


SAFE_CODE = """'use strict';
(function () {
  try {
    var recordId = Xrm.Page.data.entity.getId();
    Xrm.Navigation.openAlertDialog({ text: "%s: " + recordId });
  } catch (e) {
    Xrm.Navigation.openErrorDialog({ message: e.message });
  }
})();"""


def _command(name, code=None, description=None):
    return {
        "name": name,
        "description": description if description is not None else f"{name} for the current form",
        "code": code if code is not None else SAFE_CODE % name,
        "icon": "code",
    }


def _body(
    name="Form Helpers",
    description="Handy commands for working with model-driven forms.",
    category="Form Actions",
    tags="forms, Forms, navigation",
    command_count="3",
    commands=None,
    commands_block=None,
    contact="@Octo-Cat",
    checklist=True,
):
    if commands is None:
        commands = [_command("Show Record Id"), _command("Copy Record Url"), _command("Reload Form")]
    if commands_block is None:
        commands_block = "```json\n" + json.dumps({"commands": commands}, indent=2) + "\n```"

    sections = []
    if name is not None:
        sections.append(("Collection Name", name))
    sections += [
        ("Description", description),
        ("Category", category),
        ("Tags", tags),
        ("Command Count", command_count),
        ("Commands JSON", commands_block),
        ("Contact Info", contact),
        ("Usage Instructions", "Open any record and run the command from Level Up."),
        ("Prerequisites", "_No response_"),
        ("Safety Checklist", "- [x] I reviewed my code" if checklist else "- [ ] I reviewed my code"),
    ]
    return "\n\n".join(f"### {label}\n\n{value}" for label, value in sections)


@pytest.fixture(autouse=True)
def restore_root_logging():
    """CLI entry points reconfigure the root logger; undo that after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def make_command():
    return _command


@pytest.fixture
def make_issue():
    """Factory for GitHub issue payloads; keyword arguments shape the body."""

    def factory(number=42, title="[COLLECTION] Form Helpers", login="Octo-Cat",
                created_at="2025-01-15T10:00:00Z", **body_options):
        return {
            "number": number,
            "title": title,
            "html_url": f"https://github.com/example/level-up-community-commands/issues/{number}",
            "created_at": created_at,
            "user": {"login": login},
            "body": _body(**body_options),
        }

    return factory


@pytest.fixture
def valid_issue(make_issue):
    return make_issue()


@pytest.fixture
def eval_issue(make_issue, make_command):
    return make_issue(commands=[
        _command("Show Record Id"),
        make_command("Run Script", code="var result = eval(userInput);"),
        _command("Reload Form"),
    ])


@pytest.fixture
def missing_commands_issue(make_issue):
    return make_issue(commands_block="_No response_")


@pytest.fixture
def parsed_valid(valid_issue):
    return parse_submission(valid_issue)


@pytest.fixture
def store(tmp_path):
    return CollectionStore(str(tmp_path / "collections"))


@pytest.fixture
def fixed_now():
    return datetime(2025, 1, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clean_sarif():
    return {
        "version": "2.1.0",
        "runs": [{"tool": {"driver": {"name": "CodeQL", "rules": []}}, "results": []}],
    }
