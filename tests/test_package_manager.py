# =============================================================================
# PACKAGE MANAGER — create / export / import with checksum verification
# =============================================================================

import json
import logging

import pytest

from _collection_agent.errors import MalformedInput, PackageIntegrityError
from _collection_agent.package_manager import (
    LEVELUP_COMMAND_FIELDS,
    command_from_file,
    create_package,
    export_package,
    format_package,
    generate_checksum,
    generate_stats,
    import_package,
    main,
    package_from_collection,
    package_from_command_files,
    sanitize_command,
    validate_package,
)
from _collection_agent.models import AUTO_APPROVE
from _collection_agent.stage_1_parse_submission import parse_submission
from _collection_agent.stage_6_materialize_collection import materialize_collection


def _commands():
    return [
        {"name": "Show Id", "code": "show();", "category": "Form Actions", "tags": ["forms"],
         "author": "octo", "metadata": {"validationScore": 90}},
        {"name": "Reload", "code": "reload();", "tags": ["forms", "ui"], "validationScore": 70},
    ]


# =============================================================================
# CREATE
# =============================================================================

class TestCreatePackage:

    def test_package_shape(self, fixed_now):
        pkg = create_package(_commands(), {"name": "Helpers"}, now=fixed_now)

        assert pkg["version"] == "1.0.0"
        assert pkg["packageInfo"]["name"] == "Helpers"
        assert pkg["packageInfo"]["commandCount"] == 2
        assert pkg["packageInfo"]["createdAt"] == fixed_now.isoformat()
        assert pkg["checksum"] == generate_checksum(pkg["commands"])

    def test_sanitize_fills_defaults(self):
        command = sanitize_command({"code": "x();"}, "t")
        assert command["name"] == "Unnamed Command"
        assert command["category"] == "other"
        assert command["author"] == "Unknown"
        assert command["dynamicsVersion"] == "All versions"
        assert command["metadata"] == {"submittedAt": "t", "validated": False, "validationScore": 0}
        assert len(command["id"]) == 8

    def test_sanitize_reads_flat_metadata(self):
        command = sanitize_command({"name": "A", "code": "a();", "validated": True, "validationScore": 80})
        assert command["metadata"]["validated"] is True
        assert command["metadata"]["validationScore"] == 80

    def test_checksum_is_order_independent_for_keys(self):
        assert generate_checksum([{"a": 1, "b": 2}]) == generate_checksum([{"b": 2, "a": 1}])


# =============================================================================
# EXPORT / IMPORT
# =============================================================================

class TestExportImport:

    def test_levelup_round_trip(self, tmp_path, fixed_now):
        pkg = create_package(_commands(), now=fixed_now)
        path = export_package(pkg, str(tmp_path / "out"), now=fixed_now)

        assert path.endswith("out.json")
        imported = import_package(path)
        assert [set(c) for c in imported["commands"]] == [set(LEVELUP_COMMAND_FIELDS)] * 2
        assert imported["exportedAt"] == fixed_now.isoformat()

    def test_json_format_keeps_everything(self, tmp_path, fixed_now):
        pkg = create_package(_commands(), now=fixed_now)
        path = export_package(pkg, str(tmp_path / "full.json"), fmt="json")
        assert import_package(path) == pkg

    def test_tampered_package_rejected(self, tmp_path, fixed_now):
        path = export_package(create_package(_commands(), now=fixed_now), str(tmp_path / "p.json"))
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        data["commands"][0]["code"] = "fetch('http://evil.example');"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f)

        with pytest.raises(PackageIntegrityError) as exc_info:
            import_package(path)
        assert "checksum mismatch" in str(exc_info.value)

    def test_missing_checksum_only_warns(self, tmp_path, caplog):
        path = tmp_path / "legacy.json"
        path.write_text(json.dumps({"version": "1.0.0", "commands": [{"name": "A", "code": "a();"}]}),
                        encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            pkg = import_package(str(path))
        assert pkg["commands"][0]["name"] == "A"
        assert "no checksum" in caplog.text

    def test_missing_checksum_refused_when_required(self, tmp_path):
        path = tmp_path / "stripped.json"
        path.write_text(json.dumps({"version": "1.0.0", "commands": [{"name": "A", "code": "a();"}]}),
                        encoding="utf-8")
        with pytest.raises(PackageIntegrityError) as exc_info:
            import_package(str(path), require_checksum=True)
        assert "no checksum" in str(exc_info.value)

    def test_signed_package_passes_when_required(self, tmp_path, fixed_now):
        path = export_package(create_package(_commands(), now=fixed_now), str(tmp_path / "p.json"))
        assert import_package(path, require_checksum=True)["checksum"]

    def test_unsupported_format(self, fixed_now):
        with pytest.raises(ValueError):
            format_package(create_package(_commands(), now=fixed_now), "xml")

    def test_missing_file(self, tmp_path):
        with pytest.raises(MalformedInput):
            import_package(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(PackageIntegrityError):
            import_package(str(path))


class TestValidatePackage:

    @pytest.mark.parametrize("pkg,message", [
        ([], "JSON object"),
        ({"commands": []}, "missing version"),
        ({"version": "1.0.0"}, "missing commands"),
        ({"version": "1.0.0", "commands": []}, "no commands"),
        ({"version": "1.0.0", "commands": [{"code": "a();"}]}, "Command 1 missing name"),
        ({"version": "1.0.0", "commands": [{"name": "A"}]}, "Command 1 missing code"),
    ])
    def test_structure_errors(self, pkg, message):
        with pytest.raises(PackageIntegrityError) as exc_info:
            validate_package(pkg)
        assert message in str(exc_info.value)


# =============================================================================
# SOURCES
# =============================================================================

class TestPackageSources:

    def test_command_from_generated_file(self):
        content = (
            "// Command Name: Show Id\n// Description: Shows the id\n"
            "// Category: Form Actions\n// Author: octo\n\n/**\n * Shows the id\n */\n\nshow();"
        )
        command = command_from_file(content, "fallback")
        assert command["name"] == "Show Id"
        assert command["category"] == "Form Actions"
        assert command["code"] == "show();"

    def test_hand_written_file_keeps_content(self):
        command = command_from_file("run();", "my-command")
        assert command["name"] == "my-command"
        assert command["code"] == "run();"

    def test_materialized_commands_round_trip(self, parsed_valid, store, fixed_now):
        """Command files written by the materializer package back to the submitted code."""
        result = materialize_collection(parsed_valid, store=store,
                                        decision={"recommendation": AUTO_APPROVE}, now=fixed_now)
        pkg = package_from_command_files(store.commands_dir(result["username"]), now=fixed_now)

        codes = sorted(c["code"] for c in pkg["commands"])
        assert codes == sorted(c["code"] for c in parsed_valid["commands"])
        validate_package(pkg)

    def test_author_commands_across_collections(self, make_issue, store, fixed_now):
        for number, name in ((1, "Alpha"), (2, "Beta")):
            parsed = parse_submission(make_issue(number=number, name=name))
            materialize_collection(parsed, store=store, decision={"recommendation": AUTO_APPROVE}, now=fixed_now)

        pkg = package_from_command_files(store.commands_dir("octo-cat"), now=fixed_now)
        assert pkg["packageInfo"]["commandCount"] == 6

    def test_package_from_collection(self, parsed_valid, store, fixed_now):
        result = materialize_collection(parsed_valid, store=store,
                                        decision={"recommendation": AUTO_APPROVE}, now=fixed_now)
        pkg = package_from_collection(store.read_json(result["collectionPath"]), now=fixed_now)

        assert pkg["packageInfo"]["collectionId"] == result["collectionId"]
        assert pkg["packageInfo"]["commandCount"] == 3
        assert all(c["metadata"]["validated"] for c in pkg["commands"])

    def test_missing_commands_dir(self, tmp_path):
        with pytest.raises(MalformedInput):
            package_from_command_files(str(tmp_path / "missing"))


class TestStats:

    def test_generate_stats(self, fixed_now):
        stats = generate_stats(create_package(_commands(), now=fixed_now))
        assert stats["totalCommands"] == 2
        assert stats["categories"] == {"Form Actions": 1, "other": 1}
        assert stats["tags"] == {"forms": 2, "ui": 1}
        assert stats["averageValidationScore"] == 80
        assert stats["validatedCommands"] == 2

    def test_stats_cli(self, tmp_path, fixed_now, capsys):
        path = export_package(create_package(_commands(), now=fixed_now), str(tmp_path / "p.json"), fmt="json")
        assert main(["stats", path]) == 0
        assert json.loads(capsys.readouterr().out)["totalCommands"] == 2

    def test_import_cli_fails_on_tamper(self, tmp_path, fixed_now):
        path = export_package(create_package(_commands(), now=fixed_now), str(tmp_path / "p.json"))
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        data["checksum"] = "0" * 64
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f)

        assert main(["import", path]) == 1

    def test_import_cli_requires_checksum(self, tmp_path):
        path = tmp_path / "stripped.json"
        path.write_text(json.dumps({"version": "1.0.0", "commands": [{"name": "A", "code": "a();"}]}),
                        encoding="utf-8")
        assert main(["import", str(path)]) == 0
        assert main(["import", str(path), "--require-checksum"]) == 1
