from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from nin_processor.services.provider import (
    LiveVerificationProvider,
    ProviderOutcome,
    ProviderResult,
    classify_response,
)

FOUND_ENVELOPE = {
    "success": True,
    "statusCode": 200,
    "data": {
        "firstName": "Ada",
        "middleName": None,
        "lastName": "Obi",
        "gender": "Female",
        "dateOfBirth": "1991-07-14",
        "mobile": "08030000000",
        "image": "base64-photo",
        "status": "found",
    },
    "message": "success",
}


def test_classify_found_builds_identity() -> None:
    result = classify_response(200, FOUND_ENVELOPE)
    assert result.outcome is ProviderOutcome.FOUND
    assert result.identity is not None
    assert result.identity.surname == "Obi"
    assert result.identity.date_of_birth is not None
    assert result.identity.date_of_birth.isoformat() == "1991-07-14"


def test_classify_other_business_status_is_not_found() -> None:
    envelope = {"success": True, "statusCode": 200, "data": {"status": "not_found"}}
    result = classify_response(200, envelope)
    assert result.outcome is ProviderOutcome.NOT_FOUND
    assert result.business_status == "not_found"


def test_classify_bad_request_is_client_error_with_message() -> None:
    result = classify_response(400, {"success": False, "statusCode": 400, "message": "invalid id"})
    assert result.outcome is ProviderOutcome.CLIENT_ERROR
    assert result.message == "invalid id"


def test_classify_unsuccessful_envelope_and_unexpected_status_are_transport_errors() -> None:
    assert classify_response(200, {"success": False, "statusCode": 200}).outcome is ProviderOutcome.TRANSPORT_ERROR
    assert classify_response(502, {"message": "bad gateway"}).outcome is ProviderOutcome.TRANSPORT_ERROR
    assert classify_response(None, None).outcome is ProviderOutcome.TRANSPORT_ERROR
    assert classify_response(200, "not json").outcome is ProviderOutcome.TRANSPORT_ERROR


def test_live_provider_posts_key_with_consent_and_token() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["token"] = request.headers.get("token")
        captured["body"] = json.loads(request.content)
        return httpx.Response(status_code=200, json=FOUND_ENVELOPE, request=request)

    provider = LiveVerificationProvider(
        "https://provider.example.com/v2/identity/nin",
        "secret-token",
        transport=httpx.MockTransport(handler),
    )
    result = asyncio.run(provider.resolve("12345678901"))

    assert result.outcome is ProviderOutcome.FOUND
    assert captured["url"] == "https://provider.example.com/v2/identity/nin"
    assert captured["token"] == "secret-token"
    assert captured["body"] == {"id": "12345678901", "isSubjectConsent": "true"}


def test_live_provider_maps_bad_request_to_client_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code=400,
            json={"success": False, "statusCode": 400, "message": "id is invalid"},
            request=request,
        )

    provider = LiveVerificationProvider("https://provider.example.com", None, transport=httpx.MockTransport(handler))
    result = asyncio.run(provider.resolve("12345678901"))

    assert result.outcome is ProviderOutcome.CLIENT_ERROR
    assert result.message == "id is invalid"


def test_live_provider_maps_connection_failure_to_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = LiveVerificationProvider("https://provider.example.com", None, transport=httpx.MockTransport(handler))
    result = asyncio.run(provider.resolve("12345678901"))

    assert result.outcome is ProviderOutcome.TRANSPORT_ERROR
    assert result.message == "connection refused"


def test_live_provider_maps_non_json_server_error_to_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, text="unavailable", request=request)

    provider = LiveVerificationProvider("https://provider.example.com", None, transport=httpx.MockTransport(handler))
    result: ProviderResult = asyncio.run(provider.resolve("12345678901"))

    assert result.outcome is ProviderOutcome.TRANSPORT_ERROR
    assert result.http_status == 503
    assert result.message is None


def test_live_provider_without_url_is_transport_error() -> None:
    result = asyncio.run(LiveVerificationProvider(None, None).resolve("12345678901"))
    assert result.outcome is ProviderOutcome.TRANSPORT_ERROR
    assert result.message == "verification provider url is not configured"
