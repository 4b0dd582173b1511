"""
Shared record types for the approval pipeline.

Parsed submissions travel between stages as plain JSON-shaped dicts (they
are written to disk between CI steps). Analyzer output and the final
decision are typed records: every analyzer, whatever produced it, is
normalized into an AnalyzerReport before the decision engine sees it.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Optional


SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
RISK_LEVELS = SEVERITIES

SOURCE_STATIC = "static"
SOURCE_AI = "ai"
ANALYZER_SOURCES = (SOURCE_STATIC, SOURCE_AI)

AUTO_APPROVE = "AUTO_APPROVE"
MANUAL_REVIEW = "MANUAL_REVIEW"
REJECT = "REJECT"


def determine_risk_level(score: float) -> str:
    """Map a 0-100 safety score onto the shared risk ladder."""
    if score >= 90:
        return "LOW"
    if score >= 70:
        return "MEDIUM"
    if score >= 50:
        return "HIGH"
    return "CRITICAL"


def clamp_score(score: float) -> float:
    return max(0.0, min(100.0, float(score)))


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative scores (Python's round() is banker's)."""
    return int(math.floor(float(value) + 0.5))


def slugify(text: str, max_length: int = 50) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace. Used for every file name in the store."""
    slug = re.sub(r"[^a-z0-9\s-]", "", str(text).lower())
    return re.sub(r"\s+", "-", slug)[:max_length]


def unique_name(base: str, suffix: int, used: set, extension: str = "") -> str:
    """
    First of <base><ext>, <base>-<suffix><ext>, <base>-<suffix+1><ext>, ...
    not already in `used`. The chosen name is added to `used`.
    """
    name = f"{base}{extension}"
    while name in used:
        name = f"{base}-{suffix}{extension}"
        suffix += 1
    used.add(name)
    return name


def command_code(command: dict) -> str:
    """The command's JavaScript. Anything that is not a string reads as empty."""
    code = command.get("code")
    return code if isinstance(code, str) else ""


def comment_text(value) -> str:
    """
    Make a submitted value safe to paste into a generated JS comment header:
    one line, and no sequence that closes a block comment.
    """
    text = " ".join(line.strip() for line in str(value).splitlines() if line.strip())
    return text.replace("*/", "* /")


@dataclass
class RiskFinding:
    severity: str
    category: str
    description: str
    recommendation: str = ""
    location: Optional[str] = None
    rule_id: Optional[str] = None

    def __post_init__(self):
        self.severity = str(self.severity).upper()
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {self.severity}")

    def to_dict(self) -> dict:
        data = {
            "severity": self.severity,
            "category": self.category,
            "description": self.description,
            "recommendation": self.recommendation,
        }
        if self.location is not None:
            data["location"] = self.location
        if self.rule_id is not None:
            data["ruleId"] = self.rule_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RiskFinding":
        return cls(
            severity=data.get("severity", "MEDIUM"),
            category=data.get("category", "Other"),
            description=data.get("description", ""),
            recommendation=data.get("recommendation", ""),
            location=data.get("location"),
            rule_id=data.get("ruleId"),
        )


@dataclass
class AnalyzerReport:
    """
    Normalized output of any security analysis stage.

    `source` is the tag the decision engine weighs by ('static' or 'ai').
    `producer` names what actually generated the report (codeql,
    github-models, gemini, pattern-scanner) and is informational only.
    """

    source: str
    producer: str
    score: float
    risk_level: str
    findings: list = field(default_factory=list)
    auto_approve_hint: bool = False
    confidence: float = 0.0
    summary: str = ""
    details: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.source not in ANALYZER_SOURCES:
            raise ValueError(f"Unknown analyzer source: {self.source}")
        self.score = clamp_score(self.score)
        self.risk_level = str(self.risk_level).upper()
        if self.risk_level not in RISK_LEVELS:
            raise ValueError(f"Unknown risk level: {self.risk_level}")

    def count(self, severity: str) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "producer": self.producer,
            "score": self.score,
            "riskLevel": self.risk_level,
            "findings": [f.to_dict() for f in self.findings],
            "autoApproveHint": self.auto_approve_hint,
            "confidence": self.confidence,
            "summary": self.summary,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnalyzerReport":
        return cls(
            source=data["source"],
            producer=data.get("producer", "unknown"),
            score=data.get("score", 0),
            risk_level=data.get("riskLevel", "CRITICAL"),
            findings=[RiskFinding.from_dict(f) for f in data.get("findings", [])],
            auto_approve_hint=bool(data.get("autoApproveHint", False)),
            confidence=float(data.get("confidence", 0.0)),
            summary=data.get("summary", ""),
            details=data.get("details", {}) or {},
        )


@dataclass
class ApprovalDecision:
    overall_score: int
    recommendation: str
    scores: dict = field(default_factory=dict)
    blocking_condition: Optional[str] = None
    blocking_reason: Optional[str] = None
    issues: list = field(default_factory=list)
    feedback: str = ""
    recommendations: list = field(default_factory=list)

    @property
    def auto_approve(self) -> bool:
        return self.recommendation == AUTO_APPROVE

    def to_dict(self) -> dict:
        return {
            "overallScore": self.overall_score,
            "recommendation": self.recommendation,
            "autoApprove": self.auto_approve,
            "blockingCondition": self.blocking_condition,
            "blockingReason": self.blocking_reason,
            "scores": self.scores,
            "issues": self.issues,
            "feedback": self.feedback,
            "recommendations": self.recommendations,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalDecision":
        return cls(
            overall_score=int(data.get("overallScore", 0)),
            recommendation=data.get("recommendation", REJECT),
            scores=data.get("scores", {}),
            blocking_condition=data.get("blockingCondition"),
            blocking_reason=data.get("blockingReason"),
            issues=data.get("issues", []),
            feedback=data.get("feedback", ""),
            recommendations=data.get("recommendations", []),
        )
