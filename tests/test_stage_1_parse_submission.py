# =============================================================================
# STAGE 1 — Parse & Validate
# =============================================================================

import json

import pytest

from _collection_agent.errors import MalformedInput
from _collection_agent.stage_1_parse_submission import (
    calculate_validation_score,
    extract_commands,
    extract_contact,
    extract_field,
    extract_tags,
    extract_title_name,
    load_issue,
    normalize_category,
    parse_submission,
    split_sections,
    validate_main,
)


# =============================================================================
# SECTION TOKENIZER
# =============================================================================

class TestSplitSections:

    def test_hash_headers(self):
        """'### Label' headers become normalized keys."""
        sections = split_sections("### Collection Name\n\nMy Tools\n\n### Tags\n\na, b")
        assert sections["collection name"] == "My Tools"
        assert sections["tags"] == "a, b"

    def test_bold_headers_keep_inline_value(self):
        sections = split_sections("**Collection Name:** My Tools\n**Contact:** @someone")
        assert sections["collection name"] == "My Tools"
        assert sections["contact"] == "@someone"

    def test_headers_inside_fences_are_ignored(self):
        """A '###' line inside a code fence must not start a new section."""
        body = "### Commands JSON\n\n```\n### not a header\n[]\n```\n\n### Tags\n\nx"
        sections = split_sections(body)
        assert "### not a header" in sections["commands json"]
        assert "not a header" not in sections
        assert sections["tags"] == "x"

    def test_no_response_placeholder_is_empty(self):
        assert split_sections("### Limitations\n\n_No response_")["limitations"] == ""

    def test_first_occurrence_wins(self):
        sections = split_sections("### Tags\n\nfirst\n\n### Tags\n\nsecond")
        assert sections["tags"] == "first"

    def test_level_two_heading_ends_section(self):
        sections = split_sections("### Tags\n\nalpha\n\n## Footer\n\nignored")
        assert sections["tags"] == "alpha"


# =============================================================================
# FIELD EXTRACTION
# =============================================================================

class TestFieldExtraction:

    def test_field_lookup_accepts_any_spelling(self):
        body = "### Collection Name\n\nTools"
        assert extract_field(body, "collection-name") == "Tools"
        assert extract_field(body, "Collection Name") == "Tools"
        assert extract_field(body, "name") == "Tools"

    def test_contact_aliases(self):
        """'GitHub Username' is accepted in place of 'Contact Info'."""
        assert extract_contact("### GitHub Username\n\n @Some-User ") == "some-user"

    def test_missing_field_is_empty(self):
        assert extract_field("### Tags\n\na", "prerequisites") == ""

    def test_commands_fenced_object(self):
        body = '### Commands JSON\n\n```json\n{"commands": [{"name": "A", "code": "x()"}]}\n```'
        assert extract_commands(body) == [{"name": "A", "code": "x()"}]

    def test_commands_bare_array_unfenced(self):
        body = '### Commands\n\n[{"name": "A", "code": "x()"}, {"name": "B", "code": "y()"}]'
        assert [c["name"] for c in extract_commands(body)] == ["A", "B"]

    def test_commands_invalid_json_is_empty(self):
        assert extract_commands("### Commands JSON\n\n```json\n{not json\n```") == []

    def test_commands_drop_non_objects(self):
        body = '### Commands JSON\n\n[{"name": "A", "code": "x()"}, "stray", 3]'
        assert extract_commands(body) == [{"name": "A", "code": "x()"}]

    def test_tags_deduplicated_case_insensitively(self):
        """First spelling of a tag is kept."""
        assert extract_tags("### Tags\n\nForms, forms , navigation,,") == ["Forms", "navigation"]

    def test_category_exact_case_insensitive(self):
        assert normalize_category("form actions") == "Form Actions"
        assert normalize_category("Reporting & Analytics") == "Reporting & Analytics"

    def test_category_unknown_is_other(self):
        """No fuzzy matching: 'Forms' is not 'Form Actions'."""
        assert normalize_category("Forms") == "Other"
        assert normalize_category("") == "Other"

    def test_title_prefix_stripped(self):
        assert extract_title_name("[COLLECTION] Grid Tools") == "Grid Tools"
        assert extract_title_name("Plain title") == "Plain title"


# =============================================================================
# PARSE SUBMISSION
# =============================================================================

class TestParseSubmission:

    def test_valid_issue_metadata(self, valid_issue):
        parsed = parse_submission(valid_issue)
        metadata = parsed["metadata"]

        assert metadata["name"] == "Form Helpers"
        assert metadata["category"] == "Form Actions"
        assert metadata["tags"] == ["forms", "navigation"]
        assert metadata["commandCount"] == 3
        assert metadata["dynamicsVersion"] == "All versions"
        assert metadata["submittedBy"] == "Octo-Cat"
        assert metadata["submittedAt"] == "2025-01-15T10:00:00Z"

    def test_author_falls_back_to_submitter(self, valid_issue):
        assert parse_submission(valid_issue)["metadata"]["author"] == "Octo-Cat"

    def test_contact_is_normalized(self, valid_issue):
        assert parse_submission(valid_issue)["contactInfo"] == "octo-cat"

    def test_issue_info(self, valid_issue):
        info = parse_submission(valid_issue)["issueInfo"]
        assert info["number"] == 42
        assert info["url"].endswith("/issues/42")
        assert info["submittedBy"] == "Octo-Cat"

    def test_documentation_block(self, valid_issue):
        documentation = parse_submission(valid_issue)["documentation"]
        assert documentation["usageInstructions"].startswith("Open any record")
        assert documentation["prerequisites"] == ""
        assert documentation["description"].startswith("Handy commands")

    def test_valid_issue_passes_validation(self, valid_issue):
        """3 clean commands, ticked checklist: no errors, no warnings, full score."""
        validation = parse_submission(valid_issue)["validation"]
        assert validation == {"valid": True, "errors": [], "warnings": [], "score": 100}

    def test_name_falls_back_to_title(self, make_issue):
        parsed = parse_submission(make_issue(name=None, title="[COLLECTION] Grid Tools"))
        assert parsed["metadata"]["name"] == "Grid Tools"

    def test_reprocessing_is_deterministic(self, valid_issue):
        assert parse_submission(valid_issue) == parse_submission(valid_issue)

    def test_missing_body_does_not_raise(self):
        parsed = parse_submission({"title": "", "body": None})
        assert parsed["commands"] == []
        assert parsed["validation"]["valid"] is False


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:

    def test_missing_commands(self, missing_commands_issue):
        validation = parse_submission(missing_commands_issue)["validation"]
        assert validation["valid"] is False
        assert "Commands JSON is required and must contain at least one command" in validation["errors"]

    def test_eval_is_an_error(self, eval_issue):
        validation = parse_submission(eval_issue)["validation"]
        assert validation["valid"] is False
        assert validation["errors"] == ["Command 2 contains dangerous eval() function"]

    def test_function_constructor_is_an_error(self, make_issue, make_command):
        issue = make_issue(commands=[make_command("Dyn", code="var f = new Function('return 1');")],
                           command_count="1")
        errors = parse_submission(issue)["validation"]["errors"]
        assert errors == ["Command 1 contains dangerous Function constructor"]

    def test_missing_name_and_code(self, make_issue):
        issue = make_issue(commands=[{"name": "", "code": ""}], command_count="1")
        errors = parse_submission(issue)["validation"]["errors"]
        assert "Command 1 is missing a name" in errors
        assert "Command 1 is missing JavaScript code" in errors

    def test_hardcoded_url_is_a_warning(self, make_issue, make_command):
        issue = make_issue(commands=[make_command("Open", code="window.open('https://example.com');")],
                           command_count="1")
        validation = parse_submission(issue)["validation"]
        assert validation["valid"] is True
        assert validation["warnings"] == ["Command 1 contains hardcoded URLs"]

    def test_declared_count_mismatch(self, make_issue):
        warnings = parse_submission(make_issue(command_count="5"))["validation"]["warnings"]
        assert "Declared command count (5) doesn't match actual count (3)" in warnings

    def test_unticked_checklist(self, make_issue):
        validation = parse_submission(make_issue(checklist=False))["validation"]
        assert validation["warnings"] == ["Safety checklist not completed"]
        assert validation["score"] == 95

    def test_missing_contact(self, make_issue):
        errors = parse_submission(make_issue(contact="_No response_"))["validation"]["errors"]
        assert errors == ["Contact information (GitHub username) is required"]


class TestValidationScore:

    def test_clean_with_bonus_is_capped(self):
        assert calculate_validation_score(0, 0, 3) == 100

    def test_penalties(self):
        """100 - 25 - 10 + 5 = 70."""
        assert calculate_validation_score(1, 1, 3) == 70

    def test_no_bonus_below_three_commands(self):
        assert calculate_validation_score(0, 1, 2) == 90

    def test_floor_at_zero(self):
        assert calculate_validation_score(5, 0, 0) == 0


# =============================================================================
# INPUT LOADING & CLI
# =============================================================================

class TestLoadIssue:

    def test_json_payload(self):
        assert load_issue('{"title": "t", "body": "b"}') == {"title": "t", "body": "b"}

    def test_markdown_body(self):
        assert load_issue("### Tags\n\na") == {"title": "", "body": "### Tags\n\na"}

    def test_empty_input(self):
        with pytest.raises(MalformedInput):
            load_issue("   \n")

    def test_broken_json(self):
        with pytest.raises(MalformedInput):
            load_issue('{"title": ')


class TestValidateCli:

    def test_exit_zero_when_valid(self, tmp_path, valid_issue, capsys):
        path = tmp_path / "issue.json"
        path.write_text(json.dumps(valid_issue), encoding="utf-8")

        assert validate_main([str(path)]) == 0
        assert json.loads(capsys.readouterr().out)["valid"] is True

    def test_exit_one_when_invalid(self, tmp_path, eval_issue, capsys):
        path = tmp_path / "issue.json"
        path.write_text(json.dumps(eval_issue), encoding="utf-8")

        assert validate_main([str(path)]) == 1
        assert json.loads(capsys.readouterr().out)["valid"] is False
