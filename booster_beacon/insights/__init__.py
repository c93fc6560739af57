"""Heuristic product insights."""

from .heuristic import HeuristicInsightRunner, InsightInputs, compute_insight

__all__ = ["HeuristicInsightRunner", "InsightInputs", "compute_insight"]
