"""
Stage 2: Pattern Risk Scan — Community Command Collections

PURPOSE:
    Rule-based static detector for the submitted JavaScript commands. Each
    command is scanned against two fixed pattern tables and every match
    becomes a severity-tagged RiskFinding. The findings are turned into a
    0-100 safety score per command, and the collection score is the mean of
    the command scores.

    This scanner is also the designated fallback for the remote AI
    analyzer (Stage 4). Its output is an AnalyzerReport with exactly the
    same shape the AI analyzer produces, so the decision engine never has
    to care which one ran.

CALLED BY:
    stage_4_ai_safety_review.PatternAnalyzer, pipeline_main.py, and the
    `collection-scan` command-line tool.

FORMULA:
    command_score = 100 - sum(pattern weight for every match)
                        + defensive bonuses
    clamped to [0, 100].

    Weights by severity band:
        CRITICAL  40-50   (dynamic code execution, hardcoded credentials)
        HIGH      25-30   (string timers, document.write, tokens)
        MEDIUM    10-20   (network calls, innerHTML, cookies, plain http)
        LOW       5       (browser storage, base64 helpers)

    Defensive bonuses:
        try/catch present                 +5
        user-facing dialog/notification   +3
        'use strict' declared             +2

RISK LEVELS:
    >= 90 LOW, >= 70 MEDIUM, >= 50 HIGH, otherwise CRITICAL

DESIGN DECISIONS:
    - The scanner never executes code. It only matches text.
    - Every match is its own finding, including repeated matches of the
      same pattern in one command. Three eval() calls cost three times.
    - Code constructs (eval, Function, fetch) are matched case-sensitively,
      since JavaScript is case-sensitive and "function (" must not be read
      as the Function constructor. Credential names are matched
      case-insensitively.
"""

import argparse
import logging
import re
from typing import Optional

from . import cli_support
from .errors import MalformedInput
from .models import (
    SOURCE_AI,
    AnalyzerReport,
    RiskFinding,
    clamp_score,
    determine_risk_level,
    round_half_up,
)

logger = logging.getLogger(__name__)

PRODUCER = "pattern-scanner"
PATTERN_CONFIDENCE = 0.6
AUTO_APPROVE_MIN_SCORE = 75
LONG_LITERAL_THRESHOLD = 200

# Hosts an external-url match ignores. The whole host must end in one of
# these domains; "x.dynamics.evil.com" is still external.
TRUSTED_HOSTS = r"(?:[a-zA-Z0-9-]+\.)*(?:dynamics|microsoft|office365)\.com(?![a-zA-Z0-9.-])"


class RiskPattern:
    """One row of a pattern table."""

    def __init__(self, rule_id, regex, severity, category, weight, flags=0):
        self.rule_id = rule_id
        self.regex = re.compile(regex, flags)
        self.severity = severity
        self.category = category
        self.weight = weight


# Dynamic code execution, unsafe DOM/storage mutation, uncontrolled network calls.
DANGEROUS_PATTERNS = [
    RiskPattern("eval-call", r"\beval\s*\(", "CRITICAL", "Code Injection", 50),
    RiskPattern("function-constructor", r"(?<![\w.$])(?:new\s+)?Function\s*\(",
                "CRITICAL", "Code Injection", 50),
    RiskPattern("string-timeout", r"\bsetTimeout\s*\(\s*[\"'`][^\"'`]*[\"'`]",
                "HIGH", "Code Injection", 30),
    RiskPattern("string-interval", r"\bsetInterval\s*\(\s*[\"'`][^\"'`]*[\"'`]",
                "HIGH", "Code Injection", 30),
    RiskPattern("document-write", r"\bdocument\.write(?:ln)?\s*\(", "HIGH", "XSS Risk", 25),
    RiskPattern("inner-html-assignment", r"\.(?:inner|outer)HTML\s*\+?=(?!=)",
                "MEDIUM", "XSS Risk", 15),
    RiskPattern("insert-adjacent-html", r"\.insertAdjacentHTML\s*\(", "MEDIUM", "XSS Risk", 15),
    RiskPattern("fetch-call", r"\bfetch\s*\(", "MEDIUM", "External Requests", 15),
    RiskPattern("xml-http-request", r"\bXMLHttpRequest\b", "MEDIUM", "External Requests", 15),
    RiskPattern("jquery-ajax", r"\.ajax\s*\(", "MEDIUM", "External Requests", 15),
    RiskPattern("local-storage", r"\blocalStorage\b", "LOW", "Data Storage", 5),
    RiskPattern("session-storage", r"\bsessionStorage\b", "LOW", "Data Storage", 5),
]

# Credential-like identifiers, insecure transport, cookie access, encoding.
SUSPICIOUS_PATTERNS = [
    RiskPattern("hardcoded-password", r"password\s*[:=]\s*[\"'`][^\"'`]+[\"'`]",
                "CRITICAL", "Hardcoded Credentials", 40, re.IGNORECASE),
    RiskPattern("hardcoded-api-key", r"api[_-]?key\s*[:=]\s*[\"'`][^\"'`]+[\"'`]",
                "CRITICAL", "Hardcoded Credentials", 40, re.IGNORECASE),
    RiskPattern("hardcoded-secret", r"secret\s*[:=]\s*[\"'`][^\"'`]+[\"'`]",
                "CRITICAL", "Hardcoded Credentials", 40, re.IGNORECASE),
    RiskPattern("hardcoded-token", r"token\s*[:=]\s*[\"'`][^\"'`]+[\"'`]",
                "HIGH", "Hardcoded Credentials", 30, re.IGNORECASE),
    RiskPattern("insecure-transport", r"\bhttp://[a-zA-Z0-9.-]+",
                "MEDIUM", "Insecure Transport", 20, re.IGNORECASE),
    RiskPattern("external-url",
                r"https?://(?!" + TRUSTED_HOSTS + r")[a-zA-Z0-9.-]+",
                "MEDIUM", "External Requests", 20, re.IGNORECASE),
    RiskPattern("cookie-access", r"\bdocument\.cookie\b", "MEDIUM", "Cookie Access", 15),
    RiskPattern("base64-encoding", r"\b(?:btoa|atob)\s*\(", "LOW", "Data Encoding", 5),
]

_LONG_LITERALS = [
    re.compile(r'"(?:[^"\\\n]|\\.){%d,}"' % (LONG_LITERAL_THRESHOLD + 1)),
    re.compile(r"'(?:[^'\\\n]|\\.){%d,}'" % (LONG_LITERAL_THRESHOLD + 1)),
    re.compile(r"`(?:[^`\\]|\\.){%d,}`" % (LONG_LITERAL_THRESHOLD + 1)),
]
LONG_LITERAL_SEVERITY = "MEDIUM"
LONG_LITERAL_WEIGHT = 15

DEFENSIVE_PATTERNS = [
    (re.compile(r"\btry\s*\{[\s\S]*?\bcatch\s*[({]"), 5),
    (re.compile(r"\b(?:openAlertDialog|openErrorDialog|openConfirmDialog|setFormNotification)\b"), 3),
    (re.compile(r"[\"']use strict[\"']"), 2),
]

RECOMMENDATIONS = {
    "Code Injection": "Remove or replace with safe alternatives. Never use eval() or the Function() constructor.",
    "XSS Risk": "Sanitize all user inputs and use safe DOM manipulation methods.",
    "Hardcoded Credentials": "Remove hardcoded credentials and use secure configuration management.",
    "External Requests": "Ensure external requests go to trusted domains over HTTPS.",
    "Insecure Transport": "Use HTTPS for every request.",
    "Cookie Access": "Avoid reading or writing cookies from commands; use the Xrm APIs instead.",
    "Data Storage": "Avoid storing sensitive data in browser storage.",
    "Data Encoding": "Ensure encoded data is not used for security purposes.",
    "Obfuscation": "Replace long encoded or minified literals with readable source.",
}


def scan_collection(commands: list, source: str = SOURCE_AI) -> AnalyzerReport:
    """
    Scan every command and aggregate the results into one AnalyzerReport.

    Args:
        commands: The 'commands' list from a ParsedSubmission.
        source: Analyzer slot the report fills. The scanner stands in for
                the AI analyzer, so this defaults to 'ai'.

    Returns:
        AnalyzerReport with producer 'pattern-scanner'. Per-command results
        are kept under details['commandReports'].
    """
    command_reports = [scan_command(command, index) for index, command in enumerate(commands)]

    if not command_reports:
        return AnalyzerReport(
            source=source,
            producer=PRODUCER,
            score=0,
            risk_level="CRITICAL",
            findings=[],
            auto_approve_hint=False,
            confidence=PATTERN_CONFIDENCE,
            summary="No commands analyzed",
            details={"commandReports": []},
        )

    findings = [f for report in command_reports for f in report["findings"]]
    score = round_half_up(
        sum(report["safetyScore"] for report in command_reports) / len(command_reports)
    )
    critical = sum(1 for f in findings if f.severity == "CRITICAL")
    high = sum(1 for f in findings if f.severity == "HIGH")

    return AnalyzerReport(
        source=source,
        producer=PRODUCER,
        score=score,
        risk_level=determine_risk_level(score),
        findings=findings,
        auto_approve_hint=score >= AUTO_APPROVE_MIN_SCORE and critical == 0,
        confidence=PATTERN_CONFIDENCE,
        summary=(
            f"Analyzed {len(command_reports)} commands. Safety score: {score}/100. "
            f"Issues: {len(findings)} total ({critical} critical, {high} high)."
        ),
        details={
            "commandReports": [
                {**report, "findings": [f.to_dict() for f in report["findings"]]}
                for report in command_reports
            ],
        },
    )


def scan_command(command: dict, index: int) -> dict:
    """
    Scan a single command's code.

    Returns:
        dict with commandIndex, commandName, safetyScore, riskLevel,
        findings (list[RiskFinding]), summary and autoApprove.
    """
    name = command.get("name") or f"Command {index + 1}"
    code = command.get("code") or ""

    if not isinstance(code, str) or not code.strip():
        return {
            "commandIndex": index,
            "commandName": name,
            "safetyScore": 100,
            "riskLevel": "LOW",
            "findings": [],
            "summary": "No code to analyze",
            "autoApprove": True,
        }

    findings = []
    score = 100

    for pattern in DANGEROUS_PATTERNS + SUSPICIOUS_PATTERNS:
        for match in pattern.regex.finditer(code):
            findings.append(RiskFinding(
                severity=pattern.severity,
                category=pattern.category,
                description=f"Found potentially dangerous pattern: {match.group(0)[:80]}",
                recommendation=get_recommendation(pattern.category),
                location=_location(name, index, code, match.start()),
                rule_id=pattern.rule_id,
            ))
            score -= pattern.weight

    for literal_pattern in _LONG_LITERALS:
        for match in literal_pattern.finditer(code):
            findings.append(RiskFinding(
                severity=LONG_LITERAL_SEVERITY,
                category="Obfuscation",
                description=(
                    f"String literal of {len(match.group(0)) - 2} characters "
                    "may hide obfuscated code"
                ),
                recommendation=get_recommendation("Obfuscation"),
                location=_location(name, index, code, match.start()),
                rule_id="long-string-literal",
            ))
            score -= LONG_LITERAL_WEIGHT

    for defensive_pattern, bonus in DEFENSIVE_PATTERNS:
        if defensive_pattern.search(code):
            score += bonus

    score = int(clamp_score(score))
    critical = sum(1 for f in findings if f.severity == "CRITICAL")

    return {
        "commandIndex": index,
        "commandName": name,
        "safetyScore": score,
        "riskLevel": determine_risk_level(score),
        "findings": findings,
        "summary": _command_summary(findings),
        "autoApprove": score >= AUTO_APPROVE_MIN_SCORE and critical == 0,
    }


def get_recommendation(category: str) -> str:
    return RECOMMENDATIONS.get(category, "Review and address the identified security concern.")


def summarize_report(report: AnalyzerReport) -> str:
    lines = [
        f"Risk Scan Complete ({report.producer}):",
        f"Safety Score: {report.score:g}/100",
        f"Risk Level: {report.risk_level}",
        f"Auto-approve hint: {'Yes' if report.auto_approve_hint else 'No'}",
        f"Issues: {len(report.findings)} total",
    ]
    critical = report.count("CRITICAL")
    if critical:
        lines.append(f"{critical} critical issues found - manual review required")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _location(name: str, index: int, code: str, offset: int) -> str:
    line = code.count("\n", 0, offset) + 1
    return f"command {index + 1} ({name}), line {line}"


def _command_summary(findings: list) -> str:
    if not findings:
        return "No security issues detected. Code appears safe."

    critical = sum(1 for f in findings if f.severity == "CRITICAL")
    high = sum(1 for f in findings if f.severity == "HIGH")

    if critical:
        return f"Critical security issues detected ({critical}). Manual review required."
    if high:
        return f"High-severity issues detected ({high}). Consider addressing before approval."
    return (
        f"Minor security concerns detected ({len(findings)}). "
        "Generally safe but could be improved."
    )


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Scan a parsed collection with the rule-based risk scanner."
    )
    parser.add_argument("input", help="Parsed submission JSON (output of collection-parse)")
    parser.add_argument("--output", "-o", help="Also write the report to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        parsed = cli_support.load_json_file(args.input)
    except MalformedInput as e:
        cli_support.print_summary(f"Risk scan failed: {e}")
        return cli_support.EXIT_FAILURE

    report = scan_collection(parsed.get("commands", []))
    cli_support.emit_json(report.to_dict(), args.output)
    cli_support.print_summary(summarize_report(report))
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
