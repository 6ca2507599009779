"""
Review Kernel - workflow and escrow engine

A template-driven review workflow engine with:
- Validated, immutable stage graphs per template version
- Condition-driven automatic progression (AND/OR/NOT over typed predicates)
- Append-only stage history
- Double-entry token ledger with per-activity escrow
- Rank-based reward payout at completion
"""

__version__ = "0.1.0"
