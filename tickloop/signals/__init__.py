"""Signal decision policy."""

from tickloop.signals.policy import SignalDecisionPolicy, feature_confluence

__all__ = [
    "SignalDecisionPolicy",
    "feature_confluence",
]
