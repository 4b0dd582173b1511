"""
Pipeline Main — Community Command Collections

PURPOSE:
    Run the whole approval pipeline for one submission in a single process:

        1. Parse & validate the GitHub issue            (stage 1)
        2. Optionally extract code for the static engine (extract_code_for_analysis)
        3. Normalize the static engine's report, if any  (stage 3)
        4. AI safety review with pattern fallback        (stage 4)
        5. Approval decision                             (stage 5)
        6. Materialize on AUTO_APPROVE                   (stage 6)

    The CI workflow can also call each stage's own CLI and pass JSON files
    between steps; this module is the in-process equivalent used for local
    runs and tests.

CALLED BY:
    The `collection-pipeline` command-line tool.

RETURNS:
    dict with 'submission', 'reports', 'decision' and 'materialization'
    (None unless the collection was written to the store).
"""

import argparse
import logging
from datetime import datetime
from typing import Optional

from . import cli_support, config
from .collection_store import CollectionStore
from .config import DEFAULT_POLICY, ScoringPolicy
from .errors import FilesystemConflict, MalformedInput, MaterializationRefused
from .extract_code_for_analysis import extract_code_for_analysis
from .models import AnalyzerReport, ApprovalDecision
from .stage_1_parse_submission import load_issue, parse_submission, summarize_submission
from .stage_3_static_findings import normalize_static_report
from .stage_4_ai_safety_review import build_analyzer, run_ai_safety_review
from .stage_5_approval_decision import decide, summarize_decision
from .stage_6_materialize_collection import materialize_collection

logger = logging.getLogger(__name__)


def run_pipeline(
    issue: dict,
    static_report=None,
    analyzer=None,
    store: Optional[CollectionStore] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
    materialize: bool = True,
    extract_dir: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Process one submission end to end.

    Args:
        issue: GitHub issue payload (title, body, number, html_url,
               created_at, user.login).
        static_report: AnalyzerReport, or a raw SARIF / processed-issues dict.
        analyzer: SecurityAnalyzer for the 'ai' slot. Defaults to the
                  configured provider with pattern fallback.
        store: Collection store to materialize into.
        policy: Scoring policy for the decision.
        materialize: Write approved collections to the store.
        extract_dir: When set, write command code there for static analysis.
        now: Clock override for materialized timestamps.
    """
    # -----------------------------------------------------------------------
    # STEP 1: Parse & validate
    # -----------------------------------------------------------------------
    parsed = parse_submission(issue)
    logger.info("Parsed submission #%s: %s (%d commands, valid=%s)",
                parsed["issueInfo"]["number"], parsed["metadata"]["name"],
                len(parsed["commands"]), parsed["validation"]["valid"])

    if extract_dir and parsed["commands"]:
        extract_code_for_analysis(parsed, extract_dir, now=now)

    # -----------------------------------------------------------------------
    # STEP 2: Collect analyzer reports
    # -----------------------------------------------------------------------
    reports = []
    if static_report is not None:
        if not isinstance(static_report, AnalyzerReport):
            static_report = normalize_static_report(static_report)
        reports.append(static_report)

    ai_report = run_ai_safety_review(parsed, analyzer=analyzer or build_analyzer())
    reports.append(ai_report)

    # -----------------------------------------------------------------------
    # STEP 3: Decide
    # -----------------------------------------------------------------------
    decision = decide(parsed["validation"], reports, policy)

    # -----------------------------------------------------------------------
    # STEP 4: Materialize approved collections
    # -----------------------------------------------------------------------
    materialization = None
    if materialize and decision.auto_approve:
        materialization = materialize_collection(parsed, store=store, decision=decision, now=now)

    return {
        "submission": parsed,
        "reports": {report.source: report.to_dict() for report in reports},
        "decision": decision.to_dict(),
        "materialization": materialization,
    }


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run the full collection approval pipeline on one GitHub issue."
    )
    parser.add_argument("input", nargs="?", help="GitHub issue JSON (or markdown body); stdin if omitted")
    parser.add_argument("--static", dest="static_report", help="SARIF or processed static-analysis JSON")
    parser.add_argument("--provider", default=config.AI_PROVIDER,
                        choices=("github-models", "gemini", "none"),
                        help="Remote AI analyzer (default: %(default)s)")
    parser.add_argument("--collections-dir", default=config.COLLECTIONS_DIR,
                        help="Root of the collection store (default: %(default)s)")
    parser.add_argument("--extract-dir", help="Write command code here for static analysis")
    parser.add_argument("--no-materialize", action="store_true",
                        help="Decide only; never write to the collection store")
    parser.add_argument("--renormalize", action="store_true",
                        help="Rescale weights of the present inputs to sum to 1")
    parser.add_argument("--output", "-o", help="Also write the result to this file")
    cli_support.add_common_arguments(parser)
    args = parser.parse_args(argv)
    cli_support.setup_logging(args.log_level)

    policy = ScoringPolicy(renormalize=True) if args.renormalize else DEFAULT_POLICY

    try:
        issue = load_issue(cli_support.read_text_input(args.input))
        result = run_pipeline(
            issue,
            static_report=cli_support.load_optional_json_file(args.static_report),
            analyzer=build_analyzer(args.provider),
            store=CollectionStore(args.collections_dir),
            policy=policy,
            materialize=not args.no_materialize,
            extract_dir=args.extract_dir,
        )
    except (MalformedInput, MaterializationRefused, FilesystemConflict) as e:
        cli_support.print_summary(f"Pipeline failed: {e}")
        return cli_support.EXIT_FAILURE

    cli_support.emit_json(result, args.output)
    cli_support.print_summary(summarize_submission(result["submission"]))
    cli_support.print_summary(summarize_decision(ApprovalDecision.from_dict(result["decision"]), policy))
    if result["materialization"]:
        cli_support.print_summary(f"Materialized into {result['materialization']['collectionPath']}")
    return cli_support.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
