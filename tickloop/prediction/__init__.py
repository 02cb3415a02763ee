"""Prediction engine with outcome-driven weight and threshold adaptation."""

from tickloop.prediction.model import PredictionEngine, PredictionInput

__all__ = [
    "PredictionEngine",
    "PredictionInput",
]
