"""Generation request and outcome types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class Subject(str, Enum):
    MATHEMATICS = "Mathematics"
    PHYSICS = "Physics"
    COMPUTER_SCIENCE = "Computer Science"

    @classmethod
    def parse(cls, value: "str | Subject") -> "Subject":
        if isinstance(value, Subject):
            return value
        normalized = value.strip().lower().replace("_", " ")
        for subject in cls:
            if subject.value.lower() == normalized or subject.name.lower().replace("_", " ") == normalized:
                return subject
        raise ValueError(f"Unknown subject '{value}'. Choose one of: {', '.join(s.value for s in cls)}")


class FailureReason(str, Enum):
    PROTOCOL_ERROR = "protocol_error"
    MALFORMED_RESPONSE = "malformed_response"
    UPSTREAM_ERROR = "upstream_error"


@dataclass(frozen=True)
class Artifact:
    markup: str
    script: str
    explanation: str | None = None
    units_used: int | None = None

    def result_text(self) -> str:
        return self.markup + self.script + (self.explanation or "")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"markup": self.markup, "script": self.script}
        if self.explanation is not None:
            data["explanation"] = self.explanation
        return data


@dataclass(frozen=True)
class Clarification:
    suggested_prompt: str
    units_used: int | None = None


@dataclass(frozen=True)
class Failure:
    reason: FailureReason
    message: str
    units_used: int | None = None


Outcome = Union[Artifact, Clarification, Failure]


@dataclass(frozen=True)
class GenerationRequest:
    request_id: int
    prompt: str
    subject: Subject
    prior_artifact: Artifact | None = None

    def __post_init__(self) -> None:
        if not self.prompt.strip():
            raise ValueError("prompt must not be empty")

    @property
    def is_follow_up(self) -> bool:
        return self.prior_artifact is not None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"prompt": self.prompt, "subject": self.subject.value}
        if self.prior_artifact is not None:
            payload["followUp"] = True
            payload["previousArtifact"] = self.prior_artifact.to_dict()
        return payload
