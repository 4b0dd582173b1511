# =============================================================================
# COMMAND FILE VALIDATOR
# =============================================================================

from _collection_agent.command_file_validator import (
    main,
    validate_command_file,
    validate_command_source,
)

GOOD_COMMAND = """// Command Name: Show Record Id
// Description: Shows the id of the open record
// Category: Form Actions
// Author: octo-cat
(function () {
  'use strict';
  try {
    Xrm.Navigation.openAlertDialog({ text: Xrm.Page.data.entity.getId() });
  } catch (e) {
    Xrm.Navigation.openErrorDialog({ message: e.message });
  }
})();
"""


def _with_line(line):
    """GOOD_COMMAND with one extra statement inside the try block."""
    return GOOD_COMMAND.replace("  try {\n", "  try {\n    " + line + "\n", 1)


class TestValidateCommandSource:

    def test_good_command(self):
        result = validate_command_source(GOOD_COMMAND)
        assert result == {"valid": True, "errors": [], "warnings": [], "score": 100}

    def test_eval_is_an_error(self):
        result = validate_command_source(_with_line("eval(input);"))
        assert result["valid"] is False
        assert result["errors"] == ['Security issue: Found potentially dangerous pattern "eval("']
        assert result["score"] == 80

    def test_high_severity_suspicious_is_an_error(self):
        result = validate_command_source(_with_line("var token = 'abc';"))
        assert result["valid"] is False

    def test_medium_suspicious_is_a_warning(self):
        result = validate_command_source(_with_line("var c = document.cookie;"))
        assert result["valid"] is True
        assert result["warnings"] == ["Cookie Access: document.cookie"]
        assert result["score"] == 95

    def test_hardcoded_domain(self):
        result = validate_command_source(_with_line('var url = "https://contoso.com/api";'))
        assert "Line 8: Possible hardcoded URL or domain" in result["warnings"]

    def test_console_log(self):
        result = validate_command_source(_with_line("console.log('debug');"))
        assert result["warnings"] == ["Remove console.log statements for production"]

    def test_bare_script_collects_quality_warnings(self):
        result = validate_command_source("run();\n")
        assert result["valid"] is True
        assert 'Missing "use strict" directive' in result["warnings"]
        assert "Missing error handling (try/catch blocks)" in result["warnings"]
        assert 'Missing "Author:" in header comments' in result["warnings"]
        assert len(result["warnings"]) == 8
        assert result["score"] == 60

    def test_arrow_iife_accepted(self):
        source = GOOD_COMMAND.replace("(function () {", "(() => {")
        warnings = validate_command_source(source)["warnings"]
        assert not any("IIFE" in w for w in warnings)


class TestValidateCommandFile:

    def test_missing_file(self, tmp_path):
        result = validate_command_file(str(tmp_path / "missing.js"))
        assert result["errors"] == ["File does not exist"]
        assert result["valid"] is False

    def test_cli_exit_codes(self, tmp_path):
        good = tmp_path / "good.js"
        good.write_text(GOOD_COMMAND, encoding="utf-8")
        bad = tmp_path / "bad.js"
        bad.write_text(_with_line("eval(input);"), encoding="utf-8")

        assert main([str(good)]) == 0
        assert main([str(bad)]) == 1
