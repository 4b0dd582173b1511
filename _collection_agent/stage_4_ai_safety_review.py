"""
Stage 4: AI Safety Review — Community Command Collections

PURPOSE:
    Ask a hosted language model to review the submitted JavaScript for
    security problems, and normalize its answer into an AnalyzerReport with
    source 'ai'. When the model cannot be reached, or answers with something
    we can't use, the pattern scanner from Stage 2 produces the 'ai' report
    instead. Either way exactly one report comes out of this stage.

CALLED BY:
    pipeline_main.py and the `collection-ai-review` command-line tool.

DEPENDS ON:
    - requests, for the GitHub Models chat-completions endpoint
      (OpenAI-compatible, bearer GITHUB_TOKEN)
    - google-genai, for the Gemini provider
    - stage_2_pattern_risk_scan.scan_collection for the fallback

DESIGN DECISIONS:
    - One remote call per submission, not one per command. All commands go
      into a single prompt; each command's code is truncated at
      MAX_CODE_LENGTH characters.
    - The call is bounded by AI_TIMEOUT_SECONDS. There is no retry: a
      timeout, a non-200 status, an unparseable body or a response missing
      safetyScore / riskLevel / issues all raise AnalyzerUnavailable.
    - FallbackAnalyzer catches AnalyzerUnavailable exactly once, logs it,
      and records the reason in details.fallbackReason. Any other exception
      propagates.
    - The model is asked for JSON only, but the parser still accepts fenced
      JSON or the first {...} span in prose.
"""

import argparse
import json
import logging
from typing import Optional, Protocol

import requests
from google import genai
from google.genai import types

from . import cli_support, config
from .errors import AnalyzerUnavailable, MalformedInput
from .models import (
    RISK_LEVELS,
    SOURCE_AI,
    AnalyzerReport,
    RiskFinding,
    clamp_score,
    command_code,
)
from .stage_2_pattern_risk_scan import PRODUCER as PATTERN_PRODUCER
from .stage_2_pattern_risk_scan import scan_collection, summarize_report

logger = logging.getLogger(__name__)

AI_CONFIDENCE = 0.8
AUTO_APPROVE_MIN_SCORE = 75
PROVIDERS = ("github-models", "gemini")
PROVIDER_NONE = "none"

SYSTEM_MESSAGE = (
    "You are a cybersecurity expert specializing in JavaScript code analysis "
    "for Microsoft Dynamics 365 applications. Provide thorough security "
    "analysis in the exact JSON format requested."
)

SAFETY_PROMPT = """You are a security expert reviewing JavaScript code for a Dynamics 365 extension.
Analyze the provided commands for potential security vulnerabilities, malicious patterns, and safety issues.

Focus on:
1. Code injection vulnerabilities (eval, Function constructor, etc.)
2. Potential XSS vulnerabilities
3. Hardcoded credentials or sensitive data
4. Dangerous API calls or external requests
5. Malicious patterns or obfuscated code
6. Data exfiltration attempts
7. System manipulation attempts
8. Dynamics 365 specific security concerns

Rate the safety of the whole collection on a scale of 0-100 where:
- 90-100: Very safe, no significant security concerns
- 70-89: Generally safe with minor issues
- 50-69: Some security concerns that should be addressed
- 30-49: Significant security issues, needs review
- 0-29: Dangerous code with serious security vulnerabilities

Respond ONLY with a valid JSON object (no markdown formatting) containing:
{
  "safetyScore": <number 0-100>,
  "riskLevel": "<LOW|MEDIUM|HIGH|CRITICAL>",
  "issues": [
    {
      "severity": "<LOW|MEDIUM|HIGH|CRITICAL>",
      "category": "<category>",
      "description": "<description>",
      "recommendation": "<recommendation>",
      "commandIndex": <1-based command number or null>,
      "lineNumber": <number or null>
    }
  ],
  "summary": "<brief summary of findings>",
  "autoApprove": <boolean>
}"""

TRUNCATION_MARKER = "\n// ... (code truncated for analysis)"


# ---------------------------------------------------------------------------
# ANALYZER INTERFACE
# ---------------------------------------------------------------------------


class SecurityAnalyzer(Protocol):
    """Anything that can turn a parsed submission into an AnalyzerReport."""

    name: str

    def analyze(self, parsed: dict) -> AnalyzerReport:
        ...


class PatternAnalyzer:
    """The Stage 2 scanner behind the analyzer interface."""

    name = PATTERN_PRODUCER

    def analyze(self, parsed: dict) -> AnalyzerReport:
        return scan_collection(parsed.get("commands") or [], source=SOURCE_AI)


class RemoteInferenceAnalyzer:
    """
    A hosted model reviewing the whole submission in one request.

    Args:
        provider: 'github-models' or 'gemini'.
        model: Model name. Defaults to the provider's entry in DEFAULT_MODELS.
        api_key: GITHUB_TOKEN for github-models, GEMINI_API_KEY for gemini.
        endpoint: Chat-completions URL (github-models only).
        timeout: Seconds before the call is abandoned.
        max_code_length: Per-command truncation point for the prompt.
    """

    def __init__(
        self,
        provider: str = config.AI_PROVIDER,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: str = config.AI_ENDPOINT,
        timeout: float = config.AI_TIMEOUT_SECONDS,
        max_code_length: int = config.MAX_CODE_LENGTH,
    ):
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown AI provider: {provider}")
        self.name = provider
        self.provider = provider
        self.model = model or config.DEFAULT_MODELS[provider]
        if api_key is None:
            api_key = config.GITHUB_TOKEN if provider == "github-models" else config.GEMINI_API_KEY
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_code_length = max_code_length

    def analyze(self, parsed: dict) -> AnalyzerReport:
        commands = parsed.get("commands") or []
        if not commands:
            raise AnalyzerUnavailable("No commands to send for AI review")
        if not self.api_key:
            raise AnalyzerUnavailable(f"No API key configured for {self.provider}")

        prompt = build_safety_prompt(commands, self.max_code_length)
        logger.info("Requesting AI safety review from %s (%s) for %d commands",
                    self.provider, self.model, len(commands))

        if self.provider == "gemini":
            raw_text = self._call_gemini(prompt)
        else:
            raw_text = self._call_github_models(prompt)

        analysis = parse_analysis_response(raw_text)
        return normalize_ai_response(analysis, producer=self.provider, model=self.model)

    def _call_github_models(self, prompt: str) -> str:
        body = {
            "messages": [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
            "model": self.model,
            "temperature": 0.1,
            "max_tokens": 2000,
            "top_p": 0.1,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"{config.SOURCE_REPOSITORY}/1.0",
        }

        try:
            response = requests.post(self.endpoint, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise AnalyzerUnavailable(f"AI request failed: {e}") from e

        if response.status_code != 200:
            raise AnalyzerUnavailable(
                f"AI request failed with status {response.status_code}: {response.text[:200]}"
            )

        try:
            payload = response.json()
            return payload["choices"][0]["message"]["content"].strip()
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise AnalyzerUnavailable(f"Invalid API response structure: {e}") from e

    def _call_gemini(self, prompt: str) -> str:
        client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(self.timeout * 1000)),
        )
        generation_config = types.GenerateContentConfig(
            system_instruction=SYSTEM_MESSAGE,
            response_mime_type="application/json",
            temperature=0.1,
        )

        try:
            response = client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=generation_config,
            )
        except Exception as e:
            raise AnalyzerUnavailable(f"Gemini API call failed: {e}") from e

        raw_text = response.text or ""
        if not raw_text:
            raise AnalyzerUnavailable("Gemini returned an empty response")
        return raw_text


class FallbackAnalyzer:
    """
    Try the primary analyzer; on AnalyzerUnavailable use the fallback once.

    The substituted report keeps the fallback's own producer, and records
    why it was used under details.fallbackReason.
    """

    def __init__(self, primary, fallback):
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    def analyze(self, parsed: dict) -> AnalyzerReport:
        try:
            return self.primary.analyze(parsed)
        except AnalyzerUnavailable as e:
            logger.warning("%s unavailable, falling back to %s: %s",
                           self.primary.name, self.fallback.name, e)
            report = self.fallback.analyze(parsed)
            report.details["fallbackReason"] = str(e)
            report.details["fallbackFrom"] = self.primary.name
            return report


# ---------------------------------------------------------------------------
# PUBLIC FUNCTIONS
# ---------------------------------------------------------------------------


def build_analyzer(provider: str = config.AI_PROVIDER, **remote_options):
    """Pattern scanner alone for provider 'none', otherwise remote with fallback."""
    if provider == PROVIDER_NONE:
        return PatternAnalyzer()
    return FallbackAnalyzer(RemoteInferenceAnalyzer(provider, **remote_options), PatternAnalyzer())


def run_ai_safety_review(parsed: dict, analyzer=None, provider: str = config.AI_PROVIDER) -> AnalyzerReport:
    """
    Produce the single 'ai' AnalyzerReport for a parsed submission.

    Args:
        parsed: ParsedSubmission dict from stage 1.
        analyzer: Any SecurityAnalyzer. Built from `provider` when omitted.
        provider: 'github-models', 'gemini' or 'none'.
    """
    analyzer = analyzer or build_analyzer(provider)
    report = analyzer.analyze(parsed)
    logger.info("AI safety review by %s: score %s, risk %s",
                report.producer, report.score, report.risk_level)
    return report


def build_safety_prompt(commands: list, max_code_length: int = config.MAX_CODE_LENGTH) -> str:
    sections = [SAFETY_PROMPT, "", f"Collection contains {len(commands)} command(s)."]
    for index, command in enumerate(commands, start=1):
        code = command_code(command)
        if len(code) > max_code_length:
            code = code[:max_code_length] + TRUNCATION_MARKER
        sections.extend([
            "",
            f"Command {index}:",
            f"Name: {command.get('name') or 'Unnamed Command'}",
            f"Description: {command.get('description') or 'No description'}",
            "",
            "JavaScript Code:",
            "```javascript",
            code,
            "```",
        ])
    sections.extend(["", "Please analyze these commands and respond with the JSON format specified above."])
    return "\n".join(sections)


def parse_analysis_response(raw_text: str) -> dict:
    """
    Parse and check the model's answer.

    Accepts plain JSON, JSON inside ``` fences, or the first {...} span in
    prose. Raises AnalyzerUnavailable when no usable object is found or
    when safetyScore / riskLevel / issues are missing or mistyped.
    """
    analysis = _parse_json_object(raw_text or "")
    if analysis is None:
        raise AnalyzerUnavailable(f"No valid JSON found in AI response: {(raw_text or '')[:200]}")
    return validate_analysis(analysis)


def validate_analysis(analysis: dict) -> dict:
    """Check safetyScore / riskLevel / issues on an already-decoded response."""
    problems = []
    score = analysis.get("safetyScore")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        problems.append("safetyScore (must be a number)")
    if str(analysis.get("riskLevel", "")).upper() not in RISK_LEVELS:
        problems.append("riskLevel (must be LOW, MEDIUM, HIGH or CRITICAL)")
    if not isinstance(analysis.get("issues"), list):
        problems.append("issues (must be a list)")
    if problems:
        raise AnalyzerUnavailable(f"AI response missing required fields: {', '.join(problems)}")

    return analysis


def normalize_ai_response(analysis: dict, producer: str, model: Optional[str] = None) -> AnalyzerReport:
    findings = []
    for issue in analysis["issues"]:
        if not isinstance(issue, dict):
            continue
        try:
            findings.append(RiskFinding(
                severity=issue.get("severity", "MEDIUM"),
                category=issue.get("category") or "Other",
                description=issue.get("description") or "",
                recommendation=issue.get("recommendation") or "",
                location=_issue_location(issue),
            ))
        except ValueError as e:
            raise AnalyzerUnavailable(f"AI response has an invalid issue: {e}") from e

    score = clamp_score(analysis["safetyScore"])
    has_critical = any(f.severity == "CRITICAL" for f in findings)

    details = {"model": model} if model else {}
    if isinstance(analysis.get("commandReports"), list):
        details["commandReports"] = analysis["commandReports"]

    return AnalyzerReport(
        source=SOURCE_AI,
        producer=producer,
        score=score,
        risk_level=str(analysis["riskLevel"]).upper(),
        findings=findings,
        auto_approve_hint=bool(analysis.get("autoApprove")) and score >= AUTO_APPROVE_MIN_SCORE and not has_critical,
        confidence=_confidence(analysis.get("confidence")),
        summary=str(analysis.get("summary") or ""),
        details=details,
    )


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _parse_json_object(raw_text: str) -> Optional[dict]:
    text = raw_text.strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    if text.startswith("```"):
        lines = text.split("\n")
        if lines[-1].strip() == "```":
            try:
                parsed = json.loads("\n".join(lines[1:-1]))
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass

    first_brace = text.find("{")
    last_brace = text.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        try:
            parsed = json.loads(text[first_brace:last_brace + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return None


def _issue_location(issue: dict) -> Optional[str]:
    parts = []
    if isinstance(issue.get("commandIndex"), int):
        parts.append(f"command {issue['commandIndex']}")
    if isinstance(issue.get("lineNumber"), int):
        parts.append(f"line {issue['lineNumber']}")
    return ", ".join(parts) or None


def _confidence(value) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 1:
        return float(value)
    return AI_CONFIDENCE


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run the AI safety review (pattern scanner fallback) on a parsed submission."
    )
    parser.add_argument("input", help="Parsed submission JSON (output of collection-parse)")
    parser.add_argument("--provider", default=config.AI_PROVIDER,
                        choices=PROVIDERS + (PROVIDER_NONE,),
                        help="Remote analyzer to use (default: %(default)s)")
    parser.add_argument("--model", default=None, help="Override the provider's default model")
    parser.add_argument("--timeout", type=float, default=config.AI_TIMEOUT_SECONDS,
                        help="Seconds to wait for the remote analyzer (default: %(default)s)")
    parser.add_argument("--output", "-o", help="Also write the report to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    try:
        parsed = cli_support.load_json_file(args.input)
    except MalformedInput as e:
        cli_support.print_summary(f"AI safety check failed: {e}")
        return cli_support.EXIT_FAILURE

    if args.provider == PROVIDER_NONE:
        analyzer = build_analyzer(PROVIDER_NONE)
    else:
        analyzer = build_analyzer(args.provider, model=args.model, timeout=args.timeout)

    report = run_ai_safety_review(parsed, analyzer=analyzer)
    cli_support.emit_json(report.to_dict(), args.output)
    cli_support.print_summary(summarize_report(report))
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
