import json

import pytest
import requests
import responses

from boostrelay.common import (
    DOMAIN_TYPE_APP_BUILDER,
    DOMAIN_TYPE_BEACON_PROPOSER,
    HTTPErrorResponse,
    InvalidForkVersionError,
    compute_domain,
    get_env,
    get_ip_x_forwarded_for,
    get_mev_boost_version_from_user_agent,
    get_slice_env,
    make_request,
)

ZERO_ROOT = "0x" + "00" * 32


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def test_make_request_unserializable_payload():
    with pytest.raises(TypeError):
        make_request(requests.Session(), "GET", "", object())


def test_make_request_error_status(rsps):
    rsps.add(responses.POST, "http://relay.test/api", status=500, body="boom")
    with pytest.raises(HTTPErrorResponse) as info:
        make_request(requests.Session(), "POST", "http://relay.test/api", {"a": 1})
    assert info.value.status_code == 500
    assert info.value.body == "boom"
    assert "got an HTTP error response" in str(info.value)


def test_make_request_success_sends_json(rsps):
    rsps.add(responses.POST, "http://relay.test/api", status=200, json={"ok": True})
    resp = make_request(requests.Session(), "POST", "http://relay.test/api", {"a": 1})
    assert resp.json() == {"ok": True}
    sent = rsps.calls[0].request
    assert json.loads(sent.body) == {"a": 1}
    assert sent.headers["Content-Type"] == "application/json"


@pytest.mark.parametrize(
    "ua,version",
    [
        ("", "-"),
        ("mev-boost", "-"),
        ("mev-boost/v1.0.0", "v1.0.0"),
        ("mev-boost/v1.0.0 ", "v1.0.0"),
        ("mev-boost/v1.0.0 test", "v1.0.0"),
    ],
)
def test_get_mev_boost_version_from_user_agent(ua, version):
    assert get_mev_boost_version_from_user_agent(ua) == version


def test_compute_domain_prefix_and_length():
    domain = compute_domain(DOMAIN_TYPE_APP_BUILDER, "0x00000000", ZERO_ROOT)
    assert len(domain) == 32
    assert domain[:4] == DOMAIN_TYPE_APP_BUILDER


def test_compute_domain_depends_on_fork_version_and_type():
    a = compute_domain(DOMAIN_TYPE_BEACON_PROPOSER, "0x02000000", ZERO_ROOT)
    b = compute_domain(DOMAIN_TYPE_BEACON_PROPOSER, "0x03000000", ZERO_ROOT)
    c = compute_domain(DOMAIN_TYPE_APP_BUILDER, "0x02000000", ZERO_ROOT)
    assert a != b
    assert a[4:] == c[4:]
    assert a[:4] != c[:4]


def test_compute_domain_short_root_is_left_padded():
    assert compute_domain(DOMAIN_TYPE_APP_BUILDER, "0x00000000", "0x00") == compute_domain(
        DOMAIN_TYPE_APP_BUILDER, "0x00000000", ZERO_ROOT
    )


@pytest.mark.parametrize("fork_version", ["", "00000000", "0x000000", "0x0000000000", "0xzz000000", "0x0"])
def test_compute_domain_invalid_fork_version(fork_version):
    with pytest.raises(InvalidForkVersionError):
        compute_domain(DOMAIN_TYPE_APP_BUILDER, fork_version, ZERO_ROOT)


def test_get_env(monkeypatch):
    monkeypatch.setenv("BOOSTRELAY_TEST_VAR", "value")
    assert get_env("BOOSTRELAY_TEST_VAR", "fallback") == "value"
    monkeypatch.setenv("BOOSTRELAY_TEST_VAR", "")
    assert get_env("BOOSTRELAY_TEST_VAR", "fallback") == ""
    monkeypatch.delenv("BOOSTRELAY_TEST_VAR")
    assert get_env("BOOSTRELAY_TEST_VAR", "fallback") == "fallback"


def test_get_slice_env(monkeypatch):
    monkeypatch.setenv("BOOSTRELAY_TEST_LIST", "a,b,c")
    assert get_slice_env("BOOSTRELAY_TEST_LIST", ["x"]) == ["a", "b", "c"]
    monkeypatch.delenv("BOOSTRELAY_TEST_LIST")
    assert get_slice_env("BOOSTRELAY_TEST_LIST", ["x"]) == ["x"]


def test_get_ip_x_forwarded_for():
    assert get_ip_x_forwarded_for({"X-Forwarded-For": "1.2.3.4,5.6.7.8"}, "9.9.9.9:1") == "1.2.3.4"
    assert get_ip_x_forwarded_for({"x-forwarded-for": "1.2.3.4"}, "9.9.9.9:1") == "1.2.3.4"
    assert get_ip_x_forwarded_for({}, "9.9.9.9:1") == "9.9.9.9:1"