import json
from urllib.parse import quote

import httpx
import pytest

from cloudbox.core.exceptions import ServiceUnavailable, Unauthenticated
from cloudbox.services.sessions import (
    AuthenticatedPrincipal,
    LocalSession,
    ProviderAuthClient,
    ProviderSession,
    parse_session,
    resolve_principal,
)

COOKIES = {"session_cookie": "session", "user_data_cookie": "user_data", "custom_prefix": "custom_"}


def _auth_client(handler):
    return ProviderAuthClient("https://auth.test/v1", project="proj", transport=httpx.MockTransport(handler))


def test_missing_session_cookie_is_unauthenticated():
    with pytest.raises(Unauthenticated):
        parse_session({}, **COOKIES)


def test_local_session_takes_principal_from_user_data():
    cookies = {"session": "custom_u1_1700000000", "user_data": json.dumps({"$id": "u1", "name": "Ana"})}
    session = parse_session(cookies, **COOKIES)
    assert session == LocalSession(AuthenticatedPrincipal("u1"))


def test_local_session_accepts_percent_encoded_user_data():
    cookies = {"session": "custom_u1_1700000000", "user_data": quote(json.dumps({"id": "u1"}))}
    assert parse_session(cookies, **COOKIES).principal.user_id == "u1"


@pytest.mark.parametrize(
    "user_data",
    [None, "not json", json.dumps(["u1"]), json.dumps({"name": "no id"}), json.dumps({"id": "u2"})],
)
def test_local_session_with_bad_user_data_is_rejected(user_data):
    cookies = {"session": "custom_u1_1700000000"}
    if user_data is not None:
        cookies["user_data"] = user_data
    with pytest.raises(Unauthenticated):
        parse_session(cookies, **COOKIES)


def test_provider_session_is_resolved_through_the_provider():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["project"] = request.headers["x-project"]
        return httpx.Response(200, json={"$id": "u9"})

    session = parse_session({"session": "tok123"}, **COOKIES)
    assert session == ProviderSession("tok123")

    principal = resolve_principal(session, _auth_client(handler))

    assert principal == AuthenticatedPrincipal("u9")
    assert seen == {"auth": "Bearer tok123", "project": "proj"}


def test_rejected_provider_session_is_unauthenticated():
    client = _auth_client(lambda request: httpx.Response(401, json={"message": "expired"}))
    with pytest.raises(Unauthenticated):
        resolve_principal(ProviderSession("stale"), client)


def test_provider_outage_is_retryable():
    def handler(request):
        raise httpx.ConnectTimeout("down", request=request)

    with pytest.raises(ServiceUnavailable):
        resolve_principal(ProviderSession("tok"), _auth_client(handler))


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json=["u9"]),
    ],
)
def test_unreadable_provider_account_is_retryable(response):
    client = _auth_client(lambda request: response)
    with pytest.raises(ServiceUnavailable) as excinfo:
        resolve_principal(ProviderSession("tok"), client)
    assert excinfo.value.retryable is True


def test_unconfigured_provider_rejects_provider_sessions():
    with pytest.raises(Unauthenticated):
        resolve_principal(ProviderSession("tok"), ProviderAuthClient(""))


def test_local_session_needs_no_provider_call():
    def handler(request):
        raise AssertionError("provider must not be called")

    session = LocalSession(AuthenticatedPrincipal("u1"))
    assert resolve_principal(session, _auth_client(handler)).user_id == "u1"
