"""
Stage 3: Static Findings — Community Command Collections

PURPOSE:
    Normalize the output of an external static-analysis engine (CodeQL, run
    by the CI workflow over the files written by extract_code_for_analysis)
    into the shared AnalyzerReport shape. The engine itself is not part of
    this package; this stage only reads its report.

    Two input shapes are accepted:
      1. A SARIF document (the engine's native output): runs[].results[],
         with rule metadata under runs[].tool.driver.rules.
      2. A pre-processed findings list: {"issues": [{ruleId, severity,
         category, locations, ...}]}, as older workflow steps produced.

CALLED BY:
    pipeline_main.py and the `collection-static-report` command-line tool.

FORMULA:
    score = 100 - sum(level_points[level] * category_multiplier[category] / 100)

    level_points:         error 100, warning 50, note 10
    category_multiplier:  security 100, correctness 30, maintainability 10,
                          performance 5, anything else 10

    A single security error therefore costs the full 100 points, while a
    maintainability note costs 1.

SEVERITY MAPPING (engine level + category -> RiskFinding severity):
    error   + security  -> CRITICAL
    error               -> HIGH
    warning + security  -> HIGH
    warning             -> MEDIUM
    note                -> LOW
"""

import argparse
import logging
from typing import Optional

from . import cli_support
from .errors import MalformedInput
from .models import (
    SOURCE_STATIC,
    AnalyzerReport,
    RiskFinding,
    determine_risk_level,
    round_half_up,
)

logger = logging.getLogger(__name__)

STATIC_CONFIDENCE = 0.9
AUTO_APPROVE_MIN_SCORE = 80

LEVEL_POINTS = {"error": 100, "warning": 50, "note": 10}
CATEGORY_MULTIPLIERS = {
    "security": 100,
    "correctness": 30,
    "maintainability": 10,
    "performance": 5,
}
DEFAULT_MULTIPLIER = 10

CATEGORY_RECOMMENDATIONS = {
    "security": "Fix the reported vulnerability before resubmitting.",
    "correctness": "Fix the reported defect; it is likely to break the command at runtime.",
    "maintainability": "Consider simplifying the flagged code.",
    "performance": "Consider optimizing the flagged code.",
}


def normalize_static_report(document: dict, producer: Optional[str] = None) -> AnalyzerReport:
    """
    Turn a SARIF document (or a pre-processed issues list) into an AnalyzerReport.

    Args:
        document: Parsed JSON from the static-analysis engine.
        producer: Name to record as the report's producer. Defaults to the
                  SARIF tool driver name, or 'codeql'.

    Returns:
        AnalyzerReport with source 'static'.
    """
    if not isinstance(document, dict):
        raise MalformedInput("Static analysis report must be a JSON object")

    if isinstance(document.get("runs"), list):
        issues = []
        for run in document["runs"]:
            issues.extend(_issues_from_run(run))
            if producer is None:
                producer = (((run.get("tool") or {}).get("driver") or {}).get("name") or "").lower() or None
    else:
        issues = [_issue_from_processed(item) for item in document.get("issues", []) if isinstance(item, dict)]

    producer = producer or "codeql"

    summary_counts = {
        "totalIssues": len(issues),
        "securityIssues": sum(1 for i in issues if i["category"] == "security"),
        "errorCount": sum(1 for i in issues if i["level"] == "error"),
        "warningCount": sum(1 for i in issues if i["level"] == "warning"),
        "noteCount": sum(1 for i in issues if i["level"] == "note"),
    }

    score = calculate_security_score(issues)
    findings = [_to_finding(issue) for issue in issues]
    critical = sum(1 for f in findings if f.severity == "CRITICAL")

    return AnalyzerReport(
        source=SOURCE_STATIC,
        producer=producer,
        score=score,
        risk_level=determine_risk_level(score),
        findings=findings,
        auto_approve_hint=score >= AUTO_APPROVE_MIN_SCORE and critical == 0,
        confidence=STATIC_CONFIDENCE,
        summary=(
            f"Static analysis found {summary_counts['totalIssues']} issue(s), "
            f"{summary_counts['securityIssues']} security-related. Score: {score}/100."
        ),
        details={
            "summary": summary_counts,
            "recommendations": _recommendations(summary_counts, score),
        },
    )


def calculate_security_score(issues: list) -> int:
    score = 100.0
    for issue in issues:
        points = LEVEL_POINTS.get(issue["level"], 10)
        multiplier = CATEGORY_MULTIPLIERS.get(issue["category"], DEFAULT_MULTIPLIER)
        score -= points * multiplier / 100
    return max(0, round_half_up(score))


def map_severity(level: str, category: str) -> str:
    if level == "error":
        return "CRITICAL" if category == "security" else "HIGH"
    if level == "warning":
        return "HIGH" if category == "security" else "MEDIUM"
    return "LOW"


def summarize_static_report(report: AnalyzerReport) -> str:
    counts = report.details.get("summary", {})
    return "\n".join([
        "Static Analysis Summary",
        "=======================",
        f"Security Score: {report.score:g}/100",
        f"Risk Level: {report.risk_level}",
        f"Issues: {counts.get('totalIssues', 0)} total, "
        f"{counts.get('securityIssues', 0)} security, "
        f"{counts.get('errorCount', 0)} errors, "
        f"{counts.get('warningCount', 0)} warnings, "
        f"{counts.get('noteCount', 0)} notes",
    ])


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _issues_from_run(run: dict) -> list:
    rules = {
        rule.get("id"): rule
        for rule in ((run.get("tool") or {}).get("driver") or {}).get("rules", []) or []
        if isinstance(rule, dict)
    }

    issues = []
    for result in run.get("results", []) or []:
        rule_id = result.get("ruleId")
        message = result.get("message")
        if not rule_id or not message:
            continue

        rule = rules.get(rule_id, {})
        tags = ((rule.get("properties") or {}).get("tags")) or []
        issues.append({
            "ruleId": rule_id,
            "message": message.get("text", "") if isinstance(message, dict) else str(message),
            "level": _determine_level(result, rule, tags),
            "category": _determine_category(tags),
            "locations": _locations(result.get("locations", []) or []),
            "help": ((rule.get("help") or {}).get("text")) or "",
        })
    return issues


def _issue_from_processed(item: dict) -> dict:
    level = str(item.get("severity", "note")).lower()
    category = str(item.get("category", "other")).lower()
    return {
        "ruleId": item.get("ruleId", ""),
        "message": item.get("message") or item.get("description", ""),
        "level": level if level in LEVEL_POINTS else "note",
        "category": category,
        "locations": item.get("locations", []) or [],
        "help": "",
    }


def _determine_level(result: dict, rule: dict, tags: list) -> str:
    if result.get("level") in LEVEL_POINTS:
        return result["level"]

    severity = (rule.get("properties") or {}).get("problem.severity")
    if severity == "recommendation":
        return "note"
    if severity in LEVEL_POINTS:
        return severity

    if "security" in tags or "vulnerability" in tags:
        return "error"
    if "correctness" in tags:
        return "warning"
    return "note"


def _determine_category(tags: list) -> str:
    if "security" in tags or "vulnerability" in tags:
        return "security"
    for category in ("correctness", "maintainability", "performance"):
        if category in tags:
            return category
    return "other"


def _locations(locations: list) -> list:
    processed = []
    for location in locations:
        physical = (location or {}).get("physicalLocation")
        if not physical:
            continue
        region = physical.get("region") or {}
        processed.append({
            "file": (physical.get("artifactLocation") or {}).get("uri", "unknown"),
            "startLine": region.get("startLine", 1),
            "startColumn": region.get("startColumn", 1),
        })
    return processed


def _to_finding(issue: dict) -> RiskFinding:
    location = None
    if issue["locations"]:
        first = issue["locations"][0]
        location = f"{first.get('file', 'unknown')}:{first.get('startLine', 1)}"

    return RiskFinding(
        severity=map_severity(issue["level"], issue["category"]),
        category=issue["category"],
        description=issue["message"],
        recommendation=issue["help"] or CATEGORY_RECOMMENDATIONS.get(
            issue["category"], "Review the reported finding."
        ),
        location=location,
        rule_id=issue["ruleId"] or None,
    )


def _recommendations(counts: dict, score: int) -> list:
    recommendations = []
    if counts["securityIssues"]:
        recommendations.append({
            "priority": "HIGH",
            "category": "Security",
            "message": (
                f"Found {counts['securityIssues']} security issue(s). Review and fix "
                "all security vulnerabilities before approval."
            ),
        })
    if counts["errorCount"]:
        recommendations.append({
            "priority": "HIGH",
            "category": "Code Quality",
            "message": f"Found {counts['errorCount']} error-level issue(s). These must be fixed.",
        })
    if counts["warningCount"] > 5:
        recommendations.append({
            "priority": "MEDIUM",
            "category": "Code Quality",
            "message": f"Found {counts['warningCount']} warnings. Consider addressing them.",
        })
    if score < AUTO_APPROVE_MIN_SCORE:
        recommendations.append({
            "priority": "HIGH",
            "category": "Overall Security",
            "message": (
                f"Security score ({score}) is below the recommended threshold "
                f"({AUTO_APPROVE_MIN_SCORE}). Manual review required."
            ),
        })
    return recommendations


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Normalize a SARIF/CodeQL results file into an analyzer report."
    )
    parser.add_argument("input", help="SARIF or processed static-analysis JSON")
    parser.add_argument("--output", "-o", help="Also write the report to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        report = normalize_static_report(cli_support.load_json_file(args.input))
    except MalformedInput as e:
        cli_support.print_summary(f"Static results processing failed: {e}")
        return cli_support.EXIT_FAILURE

    cli_support.emit_json(report.to_dict(), args.output)
    cli_support.print_summary(summarize_static_report(report))
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
