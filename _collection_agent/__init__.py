# Community Command Collections - Approval Agent Package
#
# This package contains the submission approval pipeline that processes
# command collections shared through GitHub Issues. Each stage is in its
# own file and is also runnable as its own command-line tool, so a CI
# workflow can chain them with JSON files in between.
#
# The pipeline is orchestrated by pipeline_main.py. It reads the GitHub
# issue payload, scores the submitted JavaScript commands against several
# independent risk signals, decides AUTO_APPROVE / MANUAL_REVIEW / REJECT,
# and on approval writes the collection into the per-author store.
#
# Stage flow:
#   1. Parse & Validate -> 2. Pattern Risk Scan -> 3. Static Findings
#   -> 4. AI Safety Review (pattern fallback) -> 5. Approval Decision
#   -> 6. Materialize Collection

__version__ = "1.0.0"
