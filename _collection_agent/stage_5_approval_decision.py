"""
Stage 5: Approval Decision — Community Command Collections

PURPOSE:
    Combine the Stage 1 validation result and the analyzer reports (zero or
    more of: one 'static', one 'ai') into a single terminal decision:
    AUTO_APPROVE, MANUAL_REVIEW or REJECT.

    decide() is a pure function. It reads no clock, no files and no
    environment, so rerunning it on the same inputs gives the same decision,
    feedback text and recommendations.

CALLED BY:
    pipeline_main.py and the `collection-decide` command-line tool.

FORMULA:
    overall = round_half_up(
        validation.score × 0.2
      + static.score     × 0.5    # only when a static report is present
      + ai.score         × 0.3    # only when an ai report is present
    )

    A missing analyzer drops its term and the remaining weights are NOT
    rescaled, so a submission with no static report can reach at most 50.
    ScoringPolicy(renormalize=True) rescales the present weights to sum
    to 1 instead.

BLOCKING CONDITIONS (checked in this order, first match wins → REJECT):
    validation_errors              validation has at least one error
    critical_finding               any report has a CRITICAL finding
    critical_risk_level            any report's riskLevel is CRITICAL
    score_below_reject_threshold   overall < 30

THRESHOLDS (when nothing blocked):
    overall ≥ 80   AUTO_APPROVE if at least one report clears its own
                   confidence threshold (autoApproveHint and score ≥ 80 for
                   static, ≥ 75 for ai) and no report has a HIGH or CRITICAL
                   finding; otherwise MANUAL_REVIEW
    60 ≤ overall   MANUAL_REVIEW
    otherwise      REJECT
"""

import argparse
import logging
from typing import Optional

from . import cli_support
from .config import DEFAULT_POLICY, ScoringPolicy
from .errors import AnalyzerUnavailable, BlockingSecurityFinding, MalformedInput
from .models import (
    ANALYZER_SOURCES,
    AUTO_APPROVE,
    MANUAL_REVIEW,
    REJECT,
    SEVERITIES,
    SOURCE_AI,
    SOURCE_STATIC,
    AnalyzerReport,
    ApprovalDecision,
    round_half_up,
)
from .stage_3_static_findings import normalize_static_report
from .stage_4_ai_safety_review import normalize_ai_response, validate_analysis

logger = logging.getLogger(__name__)

SOURCE_LABELS = {
    SOURCE_STATIC: "Static Analysis",
    SOURCE_AI: "AI Safety Analysis",
}

SEVERITY_HEADINGS = {
    "CRITICAL": "Critical Issues",
    "HIGH": "High Priority Issues",
    "MEDIUM": "Medium Priority Issues",
    "LOW": "Low Priority Issues",
}


def decide(validation: dict, reports: list, policy: ScoringPolicy = DEFAULT_POLICY) -> ApprovalDecision:
    """
    Make the approval decision for one submission.

    Args:
        validation: The 'validation' block of a ParsedSubmission
                    ({valid, errors, warnings, score}).
        reports: AnalyzerReports, at most one per source.
        policy: Weights and thresholds.

    Returns:
        ApprovalDecision with feedback and recommendations filled in.
    """
    reports = _order_reports(reports)
    scores = _input_scores(validation, reports)
    overall = calculate_weighted_score(scores, policy)

    issues = []
    blocking_condition = None
    blocking_reason = None

    try:
        _enforce_blocking_conditions(validation, reports, overall, policy)
    except BlockingSecurityFinding as blocked:
        recommendation = REJECT
        blocking_condition = blocked.condition
        blocking_reason = blocked.reason
        issues.append(blocked.reason)
    else:
        recommendation, reason = _threshold_recommendation(reports, overall, policy)
        if reason:
            issues.append(reason)

    decision = ApprovalDecision(
        overall_score=overall,
        recommendation=recommendation,
        scores=scores,
        blocking_condition=blocking_condition,
        blocking_reason=blocking_reason,
        issues=issues,
    )
    decision.feedback = generate_feedback(decision, validation, reports)
    decision.recommendations = generate_recommendations(decision, reports, policy)

    logger.info("Decision %s (score %d%s)", recommendation, overall,
                f", blocked by {blocking_condition}" if blocking_condition else "")
    return decision


def calculate_weighted_score(scores: dict, policy: ScoringPolicy = DEFAULT_POLICY) -> int:
    """Weighted sum of the present inputs, rounded half-up."""
    total = 0.0
    weight_sum = 0.0
    for name, score in scores.items():
        weight = policy.weights.get(name, 0.0)
        total += score * weight
        weight_sum += weight

    if policy.renormalize and weight_sum > 0:
        total = total / weight_sum
    return round_half_up(total)


def generate_feedback(decision: ApprovalDecision, validation: dict, reports: list) -> str:
    """Markdown feedback for the submitter, grouped by severity."""
    feedback = []

    if decision.recommendation == AUTO_APPROVE:
        feedback.append("✅ **Collection approved for automatic processing!**\n")
    elif decision.recommendation == MANUAL_REVIEW:
        feedback.append("⚠️ **Collection requires manual review before approval.**\n")
    else:
        feedback.append("❌ **Collection was not approved.**\n")
        if decision.blocking_reason:
            feedback.append(f"Blocking condition: {decision.blocking_reason}\n")

    errors = validation.get("errors") or []
    if errors:
        feedback.append("**Validation Issues:**")
        feedback.extend(f"- ❌ {error}" for error in errors)

    warnings = validation.get("warnings") or []
    if warnings:
        feedback.append("**Validation Warnings:**")
        feedback.extend(f"- ⚠️ {warning}" for warning in warnings)

    for report in reports:
        feedback.extend(_report_feedback(report))

    suggestions = []
    if decision.scores.get("validation", 100) < 90:
        suggestions.append("- Improve code documentation and follow best practices")
    if decision.scores.get(SOURCE_STATIC, 100) < 90:
        suggestions.append("- Address security concerns identified by static analysis")
    if decision.scores.get(SOURCE_AI, 100) < 90:
        suggestions.append("- Review and fix security patterns identified by AI analysis")
    if suggestions:
        feedback.append("**Improvement Suggestions:**")
        feedback.extend(suggestions)

    return "\n".join(feedback)


def generate_recommendations(
    decision: ApprovalDecision,
    reports: list,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> list:
    recommendations = []

    if decision.recommendation == AUTO_APPROVE:
        recommendations.append({
            "priority": "INFO",
            "action": "Collection will be automatically processed and published",
            "description": _confidence_note(reports, policy),
        })
    elif decision.recommendation == MANUAL_REVIEW:
        recommendations.append({
            "priority": "HIGH",
            "action": "Schedule manual review with maintainer",
            "description": "Collection meets basic requirements but needs human verification",
        })
    else:
        recommendations.append({
            "priority": "CRITICAL",
            "action": "Address critical issues before resubmission",
            "description": decision.blocking_reason or "Collection has significant issues that must be resolved",
        })

    if decision.scores.get("validation", 100) < 80:
        recommendations.append({
            "priority": "MEDIUM",
            "action": "Improve code quality and documentation",
            "description": "Add missing documentation, follow naming conventions, and improve code structure",
        })
    if decision.scores.get(SOURCE_STATIC, 100) < 80:
        recommendations.append({
            "priority": "HIGH",
            "action": "Address security vulnerabilities",
            "description": "Fix security issues identified by static analysis tools",
        })
    if decision.scores.get(SOURCE_AI, 100) < 80:
        recommendations.append({
            "priority": "HIGH",
            "action": "Review and fix security patterns",
            "description": "Address potentially dangerous code patterns identified by AI analysis",
        })

    return recommendations


def summarize_decision(decision: ApprovalDecision, policy: ScoringPolicy = DEFAULT_POLICY) -> str:
    lines = [
        "Approval Score Calculation Summary",
        "==================================",
        "",
        f"Overall Score: {decision.overall_score}/100",
        f"Recommendation: {decision.recommendation}",
        f"Auto-approve: {'Yes' if decision.auto_approve else 'No'}",
    ]
    if decision.blocking_condition:
        lines.append(f"Blocked by: {decision.blocking_condition} ({decision.blocking_reason})")

    lines.extend(["", "Individual Scores:"])
    for name, score in decision.scores.items():
        weight = policy.weights.get(name, 0.0)
        lines.append(f"- {name}: {score:g}/100 ({weight * 100:.0f}% weight)")

    lines.extend([
        "",
        f"Issues: {len(decision.issues)}",
        f"Recommendations: {len(decision.recommendations)}",
    ])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# BLOCKING PREDICATES
# ---------------------------------------------------------------------------
# Each predicate returns a reason string when it matches, else None. The
# order of BLOCKING_PREDICATES is the order they are evaluated in.
# ---------------------------------------------------------------------------


def _validation_errors(validation, reports, overall, policy):
    errors = validation.get("errors") or []
    if errors:
        return f"Validation errors detected ({len(errors)})"
    return None


def _critical_finding(validation, reports, overall, policy):
    for report in reports:
        if report.count("CRITICAL"):
            return f"Critical security issues detected by {SOURCE_LABELS[report.source].lower()} ({report.producer})"
    return None


def _critical_risk_level(validation, reports, overall, policy):
    for report in reports:
        if report.risk_level == "CRITICAL":
            return f"Critical risk level reported by {SOURCE_LABELS[report.source].lower()} ({report.producer})"
    return None


def _score_below_reject_threshold(validation, reports, overall, policy):
    if overall < policy.reject_threshold:
        return f"Overall score ({overall}) below rejection threshold ({policy.reject_threshold:g})"
    return None


BLOCKING_PREDICATES = (
    ("validation_errors", _validation_errors),
    ("critical_finding", _critical_finding),
    ("critical_risk_level", _critical_risk_level),
    ("score_below_reject_threshold", _score_below_reject_threshold),
)


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _enforce_blocking_conditions(validation, reports, overall, policy) -> None:
    for condition, predicate in BLOCKING_PREDICATES:
        reason = predicate(validation, reports, overall, policy)
        if reason:
            raise BlockingSecurityFinding(condition, reason)


def _threshold_recommendation(reports: list, overall: int, policy: ScoringPolicy) -> tuple:
    if overall >= policy.auto_approve_threshold:
        if _clearing_reports(reports, policy) and not _has_high_or_critical(reports):
            return AUTO_APPROVE, None
        return MANUAL_REVIEW, "Score meets threshold but validation conditions not satisfied"

    if overall >= policy.manual_review_threshold:
        return MANUAL_REVIEW, None

    return REJECT, (
        f"Score ({overall}) below manual review threshold ({policy.manual_review_threshold:g})"
    )


def _clearing_reports(reports: list, policy: ScoringPolicy) -> list:
    cleared = []
    for report in reports:
        threshold = policy.confidence_thresholds.get(report.source)
        if threshold is not None and report.auto_approve_hint and report.score >= threshold:
            cleared.append(report)
    return cleared


def _has_high_or_critical(reports: list) -> bool:
    return any(report.count("HIGH") or report.count("CRITICAL") for report in reports)


def _order_reports(reports) -> list:
    by_source = {}
    for report in reports or []:
        if report.source in by_source:
            raise ValueError(f"More than one '{report.source}' report given")
        by_source[report.source] = report
    return [by_source[source] for source in ANALYZER_SOURCES if source in by_source]


def _input_scores(validation: dict, reports: list) -> dict:
    scores = {"validation": validation.get("score", 0) or 0}
    for report in reports:
        scores[report.source] = report.score
    return scores


def _report_feedback(report: AnalyzerReport) -> list:
    lines = [
        f"**{SOURCE_LABELS[report.source]} ({report.producer}):**",
        f"- Score: {report.score:g}/100",
        f"- Risk level: {report.risk_level}",
    ]
    if "fallbackReason" in report.details:
        lines.append(f"- Note: remote analysis unavailable, rule-based scan used ({report.details['fallbackReason']})")

    if not report.findings:
        lines.append("- ✅ No security issues detected")
    else:
        lines.append(f"- Issues found: {len(report.findings)}")
        for severity in reversed(SEVERITIES):
            group = [f for f in report.findings if f.severity == severity]
            if not group:
                continue
            lines.append(f"**{SEVERITY_HEADINGS[severity]} ({len(group)}):**")
            for finding in group:
                where = f" [{finding.location}]" if finding.location else ""
                lines.append(f"- {finding.category}: {finding.description}{where}")
                if finding.recommendation and severity in ("CRITICAL", "HIGH"):
                    lines.append(f"  - Recommendation: {finding.recommendation}")

    if report.summary:
        lines.append(f"- Summary: {report.summary}")
    return lines


def _confidence_note(reports: list, policy: ScoringPolicy) -> str:
    cleared = {report.source for report in _clearing_reports(reports, policy)}
    if cleared == {SOURCE_STATIC, SOURCE_AI}:
        return "Passed both static and AI validation with high confidence"
    if SOURCE_STATIC in cleared:
        return "Auto-approved based on static analysis (AI validation supplementary)"
    return "Auto-approved based on AI analysis (static analysis provided additional context)"


def _load_report(path: str, source: str) -> Optional[AnalyzerReport]:
    """
    Read an analyzer report file. Accepts a normalized AnalyzerReport, or
    the raw shapes the analyzers emit: SARIF / processed issues for static,
    a {safetyScore, riskLevel, issues} response for ai.
    """
    data = cli_support.load_optional_json_file(path)
    if data is None:
        return None
    if not isinstance(data, dict):
        raise MalformedInput(f"{path} does not contain a JSON object")

    if "source" in data:
        report = AnalyzerReport.from_dict(data)
        if report.source != source:
            raise MalformedInput(f"{path} holds a '{report.source}' report, expected '{source}'")
        return report

    if source == SOURCE_STATIC:
        return normalize_static_report(data)

    try:
        return normalize_ai_response(validate_analysis(data), producer=data.get("producer", "external"))
    except AnalyzerUnavailable as e:
        raise MalformedInput(f"{path}: {e}") from e


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Combine validation and analyzer reports into an approval decision."
    )
    parser.add_argument("input", help="Parsed submission JSON (output of collection-parse)")
    parser.add_argument("--static", dest="static_report", help="Static analysis report (AnalyzerReport or SARIF)")
    parser.add_argument("--ai", dest="ai_report", help="AI safety report (AnalyzerReport or raw AI response)")
    parser.add_argument("--renormalize", action="store_true",
                        help="Rescale weights of the present inputs to sum to 1")
    parser.add_argument("--output", "-o", help="Also write the decision to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        parsed = cli_support.load_json_file(args.input)
        reports = [
            report for report in (
                _load_report(args.static_report, SOURCE_STATIC),
                _load_report(args.ai_report, SOURCE_AI),
            ) if report is not None
        ]
    except (MalformedInput, ValueError) as e:
        cli_support.print_summary(f"Approval score calculation failed: {e}")
        return cli_support.EXIT_FAILURE

    policy = ScoringPolicy(renormalize=True) if args.renormalize else DEFAULT_POLICY
    decision = decide(parsed.get("validation") or {}, reports, policy)

    cli_support.emit_json(decision.to_dict(), args.output)
    cli_support.print_summary(summarize_decision(decision, policy))
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
