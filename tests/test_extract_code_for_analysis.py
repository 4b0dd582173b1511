# =============================================================================
# CODE EXTRACTION FOR STATIC ANALYSIS
# =============================================================================

import json
import os

import pytest

from _collection_agent.errors import MalformedInput
from _collection_agent.extract_code_for_analysis import (
    MANIFEST_NAME,
    add_analysis_header,
    extract_code_for_analysis,
    validate_extracted_files,
)


class TestExtractCode:

    def test_one_file_per_command(self, parsed_valid, tmp_path, fixed_now):
        out_dir = str(tmp_path / "analysis")
        result = extract_code_for_analysis(parsed_valid, out_dir, now=fixed_now)

        names = [f["fileName"] for f in result["extractedFiles"]]
        assert names == ["show-record-id.js", "copy-record-url.js", "reload-form.js"]
        for info in result["extractedFiles"]:
            assert os.path.isfile(info["filePath"])

    def test_manifest(self, parsed_valid, tmp_path, fixed_now):
        out_dir = str(tmp_path / "analysis")
        extract_code_for_analysis(parsed_valid, out_dir, now=fixed_now)

        with open(os.path.join(out_dir, MANIFEST_NAME), encoding="utf-8") as f:
            manifest = json.load(f)
        assert manifest["collectionName"] == "Form Helpers"
        assert manifest["commandCount"] == 3
        assert manifest["extractedAt"] == fixed_now.isoformat()
        assert len(manifest["extractedFiles"]) == 3

    def test_commands_without_code_are_skipped(self, tmp_path):
        parsed = {"commands": [{"name": "Empty"}, {"name": "Real", "code": "run();"}]}
        result = extract_code_for_analysis(parsed, str(tmp_path))
        assert [f["commandName"] for f in result["extractedFiles"]] == ["Real"]

    def test_name_collisions_get_suffix(self, tmp_path):
        parsed = {"commands": [{"name": "Same", "code": "a();"}, {"name": "Same", "code": "b();"}]}
        result = extract_code_for_analysis(parsed, str(tmp_path))
        assert [f["fileName"] for f in result["extractedFiles"]] == ["same.js", "same-2.js"]

    def test_repeated_suffix_skips_taken_names(self, tmp_path):
        parsed = {"commands": [{"name": "A", "code": "a();"}, {"name": "A-3", "code": "b();"},
                               {"name": "A", "code": "c();"}]}
        result = extract_code_for_analysis(parsed, str(tmp_path))
        assert [f["fileName"] for f in result["extractedFiles"]] == ["a.js", "a-3.js", "a-4.js"]

    def test_non_string_code_is_skipped(self, tmp_path):
        parsed = {"commands": [{"name": "List", "code": ["x()"]}, {"name": "Real", "code": "run();"}]}
        result = extract_code_for_analysis(parsed, str(tmp_path))
        assert [f["commandName"] for f in result["extractedFiles"]] == ["Real"]

    def test_no_commands(self, tmp_path):
        with pytest.raises(MalformedInput):
            extract_code_for_analysis({"commands": []}, str(tmp_path))

    def test_header_warns_against_execution(self):
        content = add_analysis_header({"name": "X", "code": "run();"}, 0)
        assert "Do not execute this code directly." in content
        assert "Description: No description provided" in content
        assert content.endswith("run();")

    def test_header_values_cannot_close_the_comment(self):
        content = add_analysis_header(
            {"name": "X", "description": "one\n*/ alert(1); /*", "code": "run();"}, 0
        )
        header = content[: -len("run();")]
        assert " * Description: one * / alert(1); /*\n" in header
        assert header.count("*/") == 1


class TestValidateExtractedFiles:

    def test_all_present(self, parsed_valid, tmp_path):
        extract_code_for_analysis(parsed_valid, str(tmp_path))
        result = validate_extracted_files(str(tmp_path))
        assert result["valid"] is True
        assert result["fileCount"] == 3

    def test_missing_file_detected(self, parsed_valid, tmp_path):
        result = extract_code_for_analysis(parsed_valid, str(tmp_path))
        os.remove(result["extractedFiles"][0]["filePath"])

        validation = validate_extracted_files(str(tmp_path))
        assert validation["valid"] is False
        assert validation["errors"] == ["Missing extracted file: show-record-id.js"]

    def test_no_manifest(self, tmp_path):
        with pytest.raises(MalformedInput):
            validate_extracted_files(str(tmp_path))
