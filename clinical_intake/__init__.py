"""Clinical Intake: fault-tolerant chunked ETL for healthcare exports.

Validates messy CSV/TSV exports against an expected schema, splits very large
files into resource-aware chunks and processes them with verified checkpoints so
an interrupted job resumes without duplicating output.
"""

__version__ = "1.0.0"
