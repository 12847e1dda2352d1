"""HTTP helper for talking JSON to a beacon node."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import requests

HTTP_ERROR_RESPONSE = "got an HTTP error response"


class BeaconHTTPError(Exception):
    """A failed request to a beacon node; status_code is 0 if no response arrived."""

    def __init__(self, message: str, status_code: int = 0, error_message: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_message = error_message


@dataclass(frozen=True)
class BeaconResponse:
    """A successful beacon node response."""

    status_code: int
    body: bytes
    url: str

    def json(self) -> Any:
        """Decode the body as JSON."""
        try:
            return json.loads(self.body)
        except ValueError as exc:
            text = self.body.decode("utf-8", "replace")
            raise BeaconHTTPError(
                f"could not unmarshal response for {self.url} from {text}: {exc}", self.status_code
            ) from exc


def _encode(payload: Any) -> bytes:
    to_json = getattr(payload, "to_json", None)
    value = to_json() if callable(to_json) else payload
    if isinstance(value, bytes):
        return value
    if isinstance(value, str) and callable(to_json):
        return value.encode()
    return json.dumps(value).encode()


def fetch_beacon(
    method: str, url: str, payload: Any = None, session: requests.Session | None = None
) -> BeaconResponse:
    """Send a request to a beacon node and raise BeaconHTTPError on failure."""
    headers = {"accept": "application/json"}
    data = None
    if payload is not None:
        try:
            data = _encode(payload)
        except (TypeError, ValueError) as exc:
            raise BeaconHTTPError(f"could not marshal request: {exc}") from exc
        headers["Content-Type"] = "application/json"

    requester = session if session is not None else requests
    try:
        response = requester.request(method, url, data=data, headers=headers)
    except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema, requests.exceptions.InvalidURL) as exc:
        raise BeaconHTTPError(f"invalid request for {url}: {exc}") from exc
    except requests.RequestException as exc:
        raise BeaconHTTPError(f"client refused for {url}: {exc}") from exc

    with response:
        try:
            body = response.content
        except requests.RequestException as exc:
            raise BeaconHTTPError(
                f"could not read response body for {url}: {exc}", response.status_code
            ) from exc

    if response.status_code >= 300:
        text = body.decode("utf-8", "replace")
        try:
            parsed = json.loads(body)
            if not isinstance(parsed, dict):
                raise ValueError("error response is not a JSON object")
            message = parsed.get("message", "")
            if not isinstance(message, str):
                raise ValueError("error message is not a string")
        except ValueError as exc:
            raise BeaconHTTPError(
                f"could not unmarshal error response from beacon node for {url} from {text}: {exc}",
                response.status_code,
            ) from exc
        raise BeaconHTTPError(f"{HTTP_ERROR_RESPONSE}: {message}", response.status_code, message)

    return BeaconResponse(response.status_code, body, url)