"""Authenticated client for the remote simulation generation endpoint."""

from __future__ import annotations

import json
from typing import Any

import httpx

from ..logger import EventLogger
from ..session.models import Session
from .models import Artifact, Clarification, Failure, FailureReason, GenerationRequest, Outcome

# Field names used by earlier revisions of the generation service.
_LEGACY_FIELDS = {"markup": "canvasHtml", "script": "jsCode"}


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _units_from_usage(data: dict[str, Any]) -> int | None:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("totalUnits")
    if isinstance(total, bool) or not isinstance(total, (int, float)) or total < 0:
        return None
    return int(total)


class GenerationClient:
    """Turns one ``GenerationRequest`` into exactly one ``Outcome``."""

    def __init__(
        self,
        endpoint: str,
        logger: EventLogger,
        *,
        timeout_seconds: float = 60.0,
        diagnostic_body_chars: int = 200,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.logger = logger
        self.timeout_seconds = timeout_seconds
        self.diagnostic_body_chars = diagnostic_body_chars
        self._http_client = http_client
        self.last_raw_response: str | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def _truncate(self, text: str) -> str:
        return text[: self.diagnostic_body_chars]

    async def generate(self, request: GenerationRequest, session: Session) -> Outcome:
        self.logger.log(
            "generation_requested",
            {
                "request_id": request.request_id,
                "subject": request.subject.value,
                "follow_up": request.is_follow_up,
                "prompt_chars": len(request.prompt),
            },
        )
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {session.access_token or ''}",
        }
        try:
            response = await self.http_client.post(self.endpoint, headers=headers, json=request.to_payload())
        except httpx.TimeoutException:
            outcome: Outcome = Failure(FailureReason.PROTOCOL_ERROR, "Generation request timed out")
        except httpx.HTTPError as exc:
            outcome = Failure(FailureReason.PROTOCOL_ERROR, f"Generation request failed: {exc}")
        else:
            outcome = self._classify(response)

        self._log_outcome(request, outcome)
        return outcome

    def _classify(self, response: httpx.Response) -> Outcome:
        body = response.text
        if not response.is_success:
            self.last_raw_response = self._truncate(body)
            return Failure(
                FailureReason.PROTOCOL_ERROR,
                f"Server error: {response.status_code} - {self._truncate(body)}",
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            self.last_raw_response = self._truncate(body)
            return Failure(FailureReason.PROTOCOL_ERROR, f"Invalid response format: {self._truncate(body)}...")

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            self.last_raw_response = self._truncate(body)
            return Failure(FailureReason.PROTOCOL_ERROR, f"Invalid response format: {self._truncate(body)}...")

        self.last_raw_response = json.dumps(data, indent=2)
        if not isinstance(data, dict):
            return Failure(FailureReason.MALFORMED_RESPONSE, "Response body must be a JSON object")

        units = _units_from_usage(data)

        suggestion = _non_empty_str(data.get("suggestion"))
        if suggestion is not None:
            return Clarification(suggestion, units_used=units)

        error = data.get("error")
        if error:
            message = error if isinstance(error, str) else json.dumps(error)
            return Failure(FailureReason.UPSTREAM_ERROR, message, units_used=units)

        markup = _non_empty_str(data.get("markup")) or _non_empty_str(data.get(_LEGACY_FIELDS["markup"]))
        script = _non_empty_str(data.get("script")) or _non_empty_str(data.get(_LEGACY_FIELDS["script"]))
        if markup is None or script is None:
            return Failure(
                FailureReason.MALFORMED_RESPONSE,
                "Incomplete simulation data received from server",
                units_used=units,
            )

        explanation = data.get("explanation")
        return Artifact(
            markup=markup,
            script=script,
            explanation=explanation if isinstance(explanation, str) else None,
            units_used=units,
        )

    def _log_outcome(self, request: GenerationRequest, outcome: Outcome) -> None:
        data: dict[str, Any] = {"request_id": request.request_id, "units_used": outcome.units_used}
        if isinstance(outcome, Artifact):
            data.update({"markup_chars": len(outcome.markup), "script_chars": len(outcome.script)})
            self.logger.log("generation_artifact", data)
        elif isinstance(outcome, Clarification):
            self.logger.log("generation_clarification", data)
        else:
            data.update({"reason": outcome.reason.value, "message": outcome.message})
            self.logger.log("generation_failure", data)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
