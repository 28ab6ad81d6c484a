"""Evaluation helpers for rating-prediction quality."""

from .metrics import RatingMetrics, compute_rating_metrics  # noqa: F401
