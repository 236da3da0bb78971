"""Orchestration package - rank, feedback and maintenance flows."""

from estimation_service.orchestration.feedback import FeedbackService
from estimation_service.orchestration.maintenance import MaintenanceRunner
from estimation_service.orchestration.rank import RankOrchestrator, RankWarnings

__all__ = [
    "FeedbackService",
    "MaintenanceRunner",
    "RankOrchestrator",
    "RankWarnings",
]
