"""Generation package exports."""

from .client import GenerationClient
from .models import Artifact, Clarification, Failure, FailureReason, GenerationRequest, Outcome, Subject

__all__ = [
    "Artifact",
    "Clarification",
    "Failure",
    "FailureReason",
    "GenerationClient",
    "GenerationRequest",
    "Outcome",
    "Subject",
]
