"""
Task predictions over the operational graph.
"""

from harvestgraph.prediction.tasks import (
    AlternateAssignee,
    AssigneeRecommendation,
    CriticalPathTask,
    EtaPrediction,
    SqlTaskHistorySource,
    TaskHistorySource,
    TaskPredictionService,
)

__all__ = [
    "AlternateAssignee",
    "AssigneeRecommendation",
    "CriticalPathTask",
    "EtaPrediction",
    "SqlTaskHistorySource",
    "TaskHistorySource",
    "TaskPredictionService",
]
