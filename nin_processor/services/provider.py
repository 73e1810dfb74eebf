from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Protocol

import httpx

from nin_processor.services.repository import LookupIdentity

logger = logging.getLogger(__name__)

SUBJECT_CONSENT = "true"
MIN_SEARCH_PARAMETER_LENGTH = 10


class ProviderOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    CLIENT_ERROR = "client_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass(slots=True)
class ProviderResult:
    outcome: ProviderOutcome
    http_status: int | None = None
    business_status: str | None = None
    identity: LookupIdentity | None = None
    message: str | None = None


class VerificationProvider(Protocol):
    name: str

    async def resolve(self, search_parameter: str, *, consent: str = SUBJECT_CONSENT) -> ProviderResult: ...


def classify_response(http_status: int | None, payload: Any) -> ProviderResult:
    """Map a provider envelope onto one of the four resolution branches."""
    body: dict[str, Any] = payload if isinstance(payload, dict) else {}

    if http_status == 200 and body.get("success") is True and _as_int(body.get("statusCode")) == 200:
        raw_data = body.get("data")
        data: dict[str, Any] = raw_data if isinstance(raw_data, dict) else {}
        business_status = _as_text(data.get("status"))
        if business_status == "found":
            return ProviderResult(
                outcome=ProviderOutcome.FOUND,
                http_status=http_status,
                business_status=business_status,
                identity=LookupIdentity(
                    first_name=_as_text(data.get("firstName")),
                    middle_name=_as_text(data.get("middleName")),
                    surname=_as_text(data.get("lastName")),
                    gender=_as_text(data.get("gender")),
                    date_of_birth=_parse_date(data.get("dateOfBirth")),
                    mobile=_as_text(data.get("mobile")),
                    photo=_as_text(data.get("image")),
                ),
            )
        return ProviderResult(
            outcome=ProviderOutcome.NOT_FOUND,
            http_status=http_status,
            business_status=business_status,
        )

    if http_status == 400:
        return ProviderResult(
            outcome=ProviderOutcome.CLIENT_ERROR,
            http_status=http_status,
            message=_as_text(body.get("message")),
        )

    return ProviderResult(outcome=ProviderOutcome.TRANSPORT_ERROR, http_status=http_status)


class LiveVerificationProvider:
    name = "live"

    def __init__(
        self,
        url: str | None,
        api_key: str | None,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def resolve(self, search_parameter: str, *, consent: str = SUBJECT_CONSENT) -> ProviderResult:
        if not self.url:
            return ProviderResult(
                outcome=ProviderOutcome.TRANSPORT_ERROR,
                message="verification provider url is not configured",
            )

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["token"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(
                    self.url,
                    json={"id": search_parameter, "isSubjectConsent": consent},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.warning("provider call failed for search_parameter=%s: %s", search_parameter, exc)
            return ProviderResult(
                outcome=ProviderOutcome.TRANSPORT_ERROR,
                message=str(exc) or exc.__class__.__name__,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        return classify_response(response.status_code, payload)


_MOCK_FOUND_PAYLOAD: dict[str, Any] = {
    "success": True,
    "statusCode": 200,
    "data": {
        "firstName": "John",
        "middleName": "Leo",
        "lastName": "Doe",
        "image": "https://example.com/image.jpg",
        "mobile": "123-456-7890",
        "dateOfBirth": "1980-01-01",
        "status": "found",
        "idNumber": "9876543210",
        "gender": "Male",
    },
    "message": "success",
}

_MOCK_NOT_FOUND_PAYLOAD: dict[str, Any] = {
    "success": True,
    "statusCode": 200,
    "data": {
        "firstName": None,
        "middleName": None,
        "lastName": None,
        "image": None,
        "mobile": None,
        "dateOfBirth": None,
        "status": "not_found",
        "idNumber": None,
        "gender": None,
    },
    "message": "success",
}

_MOCK_VALIDATION_PAYLOAD: dict[str, Any] = {
    "success": False,
    "statusCode": 400,
    "message": "ValidationError: 'id' length must be at least 10 characters long",
}


class MockVerificationProvider:
    """Stand-in for the live provider.

    Keys shorter than ten characters always fail validation. Otherwise one call
    in ten fails with a 500 and the rest split evenly between found and
    not_found, each after 10-100ms of simulated latency.
    """

    name = "mock"

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        latency_ms: tuple[int, int] = (10, 100),
        failure_rate: float = 0.1,
    ) -> None:
        self.rng = rng or random.Random()
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate

    async def resolve(self, search_parameter: str, *, consent: str = SUBJECT_CONSENT) -> ProviderResult:
        if len(search_parameter or "") < MIN_SEARCH_PARAMETER_LENGTH:
            status_code, payload = 400, _MOCK_VALIDATION_PAYLOAD
        else:
            chance = self.rng.random()
            succeeded = 1.0 - self.failure_rate
            if chance > succeeded:
                status_code, payload = 500, {"message": "Network Error"}
            elif chance > succeeded / 2:
                status_code, payload = 200, _MOCK_FOUND_PAYLOAD
            else:
                status_code, payload = 200, _MOCK_NOT_FOUND_PAYLOAD

        low, high = self.latency_ms
        await asyncio.sleep(self.rng.randint(low, high) / 1000.0)
        return classify_response(status_code, payload)


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    raw = _as_text(value)
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None
