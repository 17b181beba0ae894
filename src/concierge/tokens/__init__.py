"""Token estimation and active-window splitting."""

from concierge.tokens.estimator import ContextWindow, TokenEstimator, split_window

__all__ = ["ContextWindow", "TokenEstimator", "split_window"]
