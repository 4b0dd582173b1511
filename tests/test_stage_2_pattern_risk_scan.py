# =============================================================================
# STAGE 2 — Pattern Risk Scanner
# =============================================================================

import pytest

from _collection_agent.models import SOURCE_AI, SOURCE_STATIC
from _collection_agent.stage_2_pattern_risk_scan import (
    DANGEROUS_PATTERNS,
    SUSPICIOUS_PATTERNS,
    scan_collection,
    scan_command,
    summarize_report,
)


def _rule_ids(result):
    return [f.rule_id for f in result["findings"]]


# =============================================================================
# SINGLE COMMAND
# =============================================================================

class TestScanCommand:

    def test_safe_command_scores_full(self, make_command):
        """Defensive bonuses can't push a clean command past 100."""
        result = scan_command(make_command("Show Record Id"), 0)
        assert result["safetyScore"] == 100
        assert result["riskLevel"] == "LOW"
        assert result["findings"] == []
        assert result["autoApprove"] is True

    def test_eval_is_critical(self):
        result = scan_command({"name": "Bad", "code": "eval(x);"}, 0)
        assert _rule_ids(result) == ["eval-call"]
        assert result["findings"][0].severity == "CRITICAL"
        assert result["safetyScore"] == 50
        assert result["autoApprove"] is False

    def test_repeated_matches_each_count(self):
        """Two eval() calls are two findings and two deductions."""
        result = scan_command({"name": "Bad", "code": "eval(a);\neval(b);"}, 0)
        assert _rule_ids(result) == ["eval-call", "eval-call"]
        assert result["safetyScore"] == 0
        assert result["riskLevel"] == "CRITICAL"

    def test_function_keyword_is_not_the_constructor(self):
        result = scan_command({"name": "Ok", "code": "var f = function (a) { return a; };"}, 0)
        assert "function-constructor" not in _rule_ids(result)

    def test_function_constructor_detected(self):
        result = scan_command({"name": "Bad", "code": "var f = new Function('return 1');"}, 0)
        assert "function-constructor" in _rule_ids(result)

    def test_credentials_match_case_insensitively(self):
        result = scan_command({"name": "Key", "code": "var API_KEY = 'abc123';"}, 0)
        assert "hardcoded-api-key" in _rule_ids(result)

    def test_trusted_domains_are_not_external(self):
        code = "Xrm.Navigation.openUrl('https://org.crm.dynamics.com/main.aspx');"
        result = scan_command({"name": "Open", "code": code}, 0)
        assert "external-url" not in _rule_ids(result)

    @pytest.mark.parametrize("url", [
        "https://x.dynamics.evil.com/steal",
        "https://org.crm.dynamics.com.attacker.net/",
        "https://microsoft.example.org/",
    ])
    def test_trusted_name_inside_foreign_host_is_external(self, url):
        result = scan_command({"name": "Open", "code": f"Xrm.Navigation.openUrl('{url}');"}, 0)
        assert "external-url" in _rule_ids(result)

    @pytest.mark.parametrize("url", ["https://learn.microsoft.com/", "https://outlook.office365.com:443/"])
    def test_trusted_hosts(self, url):
        result = scan_command({"name": "Open", "code": f"Xrm.Navigation.openUrl('{url}');"}, 0)
        assert "external-url" not in _rule_ids(result)

    def test_plain_http_external_url(self):
        result = scan_command({"name": "Call", "code": "var u = 'http://example.com/api';"}, 0)
        ids = _rule_ids(result)
        assert "insecure-transport" in ids
        assert "external-url" in ids

    def test_long_string_literal(self):
        code = 'var blob = "' + "A" * 250 + '";'
        result = scan_command({"name": "Blob", "code": code}, 0)
        assert "long-string-literal" in _rule_ids(result)

    def test_location_reports_line(self):
        result = scan_command({"name": "Bad", "code": "var a = 1;\nvar b = 2;\neval(a);"}, 4)
        assert result["findings"][0].location == "command 5 (Bad), line 3"

    def test_missing_code(self):
        result = scan_command({"name": "Empty"}, 0)
        assert result["safetyScore"] == 100
        assert result["summary"] == "No code to analyze"

    def test_unnamed_command(self):
        assert scan_command({"code": "x();"}, 2)["commandName"] == "Command 3"


# =============================================================================
# COLLECTION REPORT
# =============================================================================

class TestScanCollection:

    def test_report_shape(self, make_command):
        report = scan_collection([make_command("A"), make_command("B")])
        assert report.source == SOURCE_AI
        assert report.producer == "pattern-scanner"
        assert report.confidence == pytest.approx(0.6)
        assert report.score == 100
        assert report.auto_approve_hint is True
        assert len(report.details["commandReports"]) == 2

    def test_score_is_mean_of_commands(self, make_command):
        """(100 + 50) / 2 = 75, and a CRITICAL finding withholds the hint."""
        report = scan_collection([make_command("A"), {"name": "Bad", "code": "eval(x);"}])
        assert report.score == 75
        assert report.risk_level == "MEDIUM"
        assert report.count("CRITICAL") == 1
        assert report.auto_approve_hint is False

    def test_empty_collection(self):
        report = scan_collection([])
        assert report.score == 0
        assert report.risk_level == "CRITICAL"
        assert report.summary == "No commands analyzed"

    def test_source_override(self, make_command):
        assert scan_collection([make_command("A")], source=SOURCE_STATIC).source == SOURCE_STATIC

    def test_details_are_json_ready(self):
        report = scan_collection([{"name": "Bad", "code": "eval(x);"}])
        finding = report.details["commandReports"][0]["findings"][0]
        assert finding["ruleId"] == "eval-call"
        assert finding["severity"] == "CRITICAL"

    def test_summary_mentions_critical(self):
        text = summarize_report(scan_collection([{"name": "Bad", "code": "eval(x);"}]))
        assert "1 critical issues found" in text


class TestPatternTables:

    def test_rule_ids_are_unique(self):
        ids = [p.rule_id for p in DANGEROUS_PATTERNS + SUSPICIOUS_PATTERNS]
        assert len(ids) == len(set(ids))

    def test_dynamic_execution_weighs_most(self):
        weights = {p.rule_id: p.weight for p in DANGEROUS_PATTERNS}
        assert weights["eval-call"] == max(weights.values())
