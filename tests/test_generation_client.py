from __future__ import annotations

import asyncio
import json

import httpx

from conceptsim.generation import (
    Artifact,
    Clarification,
    Failure,
    FailureReason,
    GenerationClient,
    GenerationRequest,
    Subject,
)
from conceptsim.session import Session

ENDPOINT = "https://gen.example.test/functions/v1/simulate"
SESSION = Session(identity="user-1", access_token="tok-abc", expires_at=None)


def _generate(event_logger, handler, request: GenerationRequest | None = None, **kwargs):
    client = GenerationClient(
        ENDPOINT,
        event_logger,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )
    request = request or GenerationRequest(1, "Show a ball falling under gravity", Subject.PHYSICS)

    async def scenario():
        try:
            return await client.generate(request, SESSION)
        finally:
            await client.close()

    return client, asyncio.run(scenario())


def test_artifact_response_is_parsed_with_reported_units(event_logger) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "markup": "<canvas id='c'></canvas>",
                "script": "ctx = canvas.get_context('2d')",
                "explanation": "A ball accelerates downward.",
                "usage": {"totalUnits": 120},
            },
        )

    client, outcome = _generate(event_logger, handler)

    assert isinstance(outcome, Artifact)
    assert outcome.units_used == 120
    assert outcome.explanation == "A ball accelerates downward."
    assert seen["auth"] == "Bearer tok-abc"
    assert seen["body"] == {"prompt": "Show a ball falling under gravity", "subject": "Physics"}
    assert "totalUnits" in client.last_raw_response
    assert event_logger.events_of_type("generation_artifact")


def test_legacy_field_names_are_accepted(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"canvasHtml": "<canvas></canvas>", "jsCode": "x = 1"})

    _, outcome = _generate(event_logger, handler)

    assert isinstance(outcome, Artifact)
    assert outcome.markup == "<canvas></canvas>"
    assert outcome.script == "x = 1"
    assert outcome.units_used is None


def test_suggestion_becomes_clarification(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"suggestion": "Simulate projectile motion at 45 degrees"})

    _, outcome = _generate(event_logger, handler)

    assert outcome == Clarification("Simulate projectile motion at 45 degrees")


def test_upstream_error_message_is_kept_verbatim(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "Model refused the request", "usage": {"totalUnits": 3}})

    _, outcome = _generate(event_logger, handler)

    assert outcome == Failure(FailureReason.UPSTREAM_ERROR, "Model refused the request", units_used=3)


def test_server_error_reports_status_and_truncated_body(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="x" * 500)

    client, outcome = _generate(event_logger, handler, diagnostic_body_chars=10)

    assert isinstance(outcome, Failure)
    assert outcome.reason is FailureReason.PROTOCOL_ERROR
    assert outcome.message == "Server error: 500 - xxxxxxxxxx"
    assert outcome.units_used is None
    assert client.last_raw_response == "x" * 10


def test_non_json_response_is_a_protocol_error(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    _, outcome = _generate(event_logger, handler)

    assert isinstance(outcome, Failure)
    assert outcome.reason is FailureReason.PROTOCOL_ERROR
    assert outcome.message == "Invalid response format: <html>gateway</html>..."


def test_missing_script_is_malformed(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"markup": "<canvas></canvas>", "script": "   "})

    _, outcome = _generate(event_logger, handler)

    assert outcome == Failure(FailureReason.MALFORMED_RESPONSE, "Incomplete simulation data received from server")


def test_json_array_body_is_malformed(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["not", "an", "object"])

    _, outcome = _generate(event_logger, handler)

    assert isinstance(outcome, Failure)
    assert outcome.reason is FailureReason.MALFORMED_RESPONSE


def test_transport_failure_never_raises(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _, outcome = _generate(event_logger, handler)

    assert isinstance(outcome, Failure)
    assert outcome.reason is FailureReason.PROTOCOL_ERROR
    assert outcome.message.startswith("Generation request failed:")
    failures = event_logger.events_of_type("generation_failure")
    assert failures[0]["reason"] == "protocol_error"


def test_timeout_is_reported(event_logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    _, outcome = _generate(event_logger, handler)

    assert outcome == Failure(FailureReason.PROTOCOL_ERROR, "Generation request timed out")


def test_follow_up_sends_previous_artifact(event_logger) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"markup": "<canvas></canvas>", "script": "y = 2"})

    prior = Artifact("<canvas></canvas>", "x = 1", explanation="first")
    request = GenerationRequest(2, "Now add air resistance", Subject.PHYSICS, prior_artifact=prior)
    _generate(event_logger, handler, request)

    assert seen["body"]["followUp"] is True
    assert seen["body"]["previousArtifact"] == {"markup": "<canvas></canvas>", "script": "x = 1", "explanation": "first"}
