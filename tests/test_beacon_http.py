import json

import pytest
import responses

from boostrelay.beacon_http import BeaconHTTPError, fetch_beacon

URL = "http://beacon.test/eth/v1/node/syncing"


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def test_success_returns_decoded_body(rsps):
    rsps.add(responses.GET, URL, json={"data": {"head_slot": "5"}})
    resp = fetch_beacon("GET", URL)
    assert resp.status_code == 200
    assert resp.json() == {"data": {"head_slot": "5"}}
    assert rsps.calls[0].request.headers["accept"] == "application/json"


def test_error_status_with_message(rsps):
    rsps.add(responses.GET, URL, status=503, json={"code": 503, "message": "node down"})
    with pytest.raises(BeaconHTTPError) as info:
        fetch_beacon("GET", URL)
    assert info.value.status_code == 503
    assert info.value.error_message == "node down"
    assert str(info.value) == "got an HTTP error response: node down"


def test_error_status_with_unparseable_body(rsps):
    rsps.add(responses.GET, URL, status=500, body="oops")
    with pytest.raises(BeaconHTTPError, match="could not unmarshal error response") as info:
        fetch_beacon("GET", URL)
    assert info.value.status_code == 500


def test_connection_failure(rsps):
    with pytest.raises(BeaconHTTPError, match="client refused") as info:
        fetch_beacon("GET", URL)
    assert info.value.status_code == 0


def test_invalid_url():
    with pytest.raises(BeaconHTTPError, match="invalid request"):
        fetch_beacon("GET", "not a url")


def test_unserializable_payload():
    with pytest.raises(BeaconHTTPError, match="could not marshal request"):
        fetch_beacon("POST", URL, object())


def test_post_sends_json_payload(rsps):
    rsps.add(responses.POST, URL, status=200, body="")
    resp = fetch_beacon("POST", URL, {"slot": "1"})
    assert resp.status_code == 200
    request = rsps.calls[0].request
    assert json.loads(request.body) == {"slot": "1"}
    assert request.headers["Content-Type"] == "application/json"


def test_payload_with_to_json(rsps):
    class Block:
        def to_json(self):
            return {"message": {"slot": "9"}}

    rsps.add(responses.POST, URL, status=200, body="")
    fetch_beacon("POST", URL, Block())
    assert json.loads(rsps.calls[0].request.body) == {"message": {"slot": "9"}}


def test_json_on_invalid_body_raises(rsps):
    rsps.add(responses.GET, URL, status=200, body="not json")
    resp = fetch_beacon("GET", URL)
    with pytest.raises(BeaconHTTPError, match="could not unmarshal response"):
        resp.json()