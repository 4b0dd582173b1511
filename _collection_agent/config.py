"""
Configuration — Community Command Collections

PURPOSE:
    One place for the knobs the pipeline reads from the environment, plus
    the scoring policy used by the approval decision engine.

    Environment values are read once at import time, the same way the CI
    runner exports them. Every function that uses one of these constants
    also takes it as an explicit parameter, so tests and the CLIs can
    override it without touching the environment.

ENVIRONMENT:
    GITHUB_TOKEN        Token for the GitHub Models inference endpoint
    GEMINI_API_KEY      API key for the Gemini provider
    AI_PROVIDER         'github-models' (default), 'gemini', or 'none'
    AI_MODEL            Model name for the selected provider
    AI_ENDPOINT         Chat-completions URL for 'github-models'
    AI_TIMEOUT_SECONDS  Upper bound on the remote analyzer call (default 30)
    COLLECTIONS_DIR     Root of the per-author artifact store
    LOG_LEVEL           Logging level name for the CLIs (default INFO)
"""

import os
from dataclasses import dataclass, field


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


# -----------------------------------------------------------------------
# AI ANALYZER
# -----------------------------------------------------------------------

GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
AI_PROVIDER = os.environ.get("AI_PROVIDER", "github-models")
AI_ENDPOINT = os.environ.get(
    "AI_ENDPOINT", "https://models.inference.ai.azure.com/chat/completions"
)
AI_TIMEOUT_SECONDS = _env_float("AI_TIMEOUT_SECONDS", 30.0)

DEFAULT_MODELS = {
    "github-models": "gpt-4o-mini",
    "gemini": "gemini-2.5-flash-lite",
}
AI_MODEL = os.environ.get("AI_MODEL", "") or DEFAULT_MODELS.get(AI_PROVIDER, "")

# Code sent to the remote analyzer is truncated per command to keep the
# prompt bounded.
MAX_CODE_LENGTH = 10000

# -----------------------------------------------------------------------
# STORE / CLI
# -----------------------------------------------------------------------

COLLECTIONS_DIR = os.environ.get("COLLECTIONS_DIR", "./collections")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

SOURCE_REPOSITORY = "level-up-community-commands"
SITE_BASE_URL = "https://rajyraman.github.io/level-up-community-commands"


# -----------------------------------------------------------------------
# SCORING POLICY
# -----------------------------------------------------------------------
# Weights are keyed by input name: 'validation' plus one key per analyzer
# source ('static', 'ai'). An input that is absent simply contributes
# nothing unless renormalize is set.
# -----------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringPolicy:
    weights: dict = field(default_factory=lambda: {
        "validation": 0.2,
        "static": 0.5,
        "ai": 0.3,
    })
    auto_approve_threshold: float = 80
    manual_review_threshold: float = 60
    reject_threshold: float = 30
    # Per-source score an analyzer must reach (together with its own
    # autoApproveHint) to vouch for an auto-approval.
    confidence_thresholds: dict = field(default_factory=lambda: {
        "static": 80,
        "ai": 75,
    })
    renormalize: bool = False


DEFAULT_POLICY = ScoringPolicy()
