"""Resolve the request's session cookie into a single authenticated principal.

Two session schemes exist: sessions issued by the auth provider, verified by
asking the provider for the account they belong to, and locally issued
("custom") sessions whose principal travels in a separate user-data cookie.
Everything downstream only sees ``AuthenticatedPrincipal``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Union
from urllib.parse import unquote

import httpx

from cloudbox.core.exceptions import ServiceUnavailable, Unauthenticated

logger = logging.getLogger("cloudbox.sessions")


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    user_id: str


@dataclass(frozen=True)
class ProviderSession:
    token: str


@dataclass(frozen=True)
class LocalSession:
    principal: AuthenticatedPrincipal


Session = Union[ProviderSession, LocalSession]


class ProviderAuthClient:
    """Looks up the account behind a provider-issued session token."""

    def __init__(self, base_url: str, project: str = "", timeout: float = 10.0, transport=None) -> None:
        self.base_url = base_url.rstrip("/")
        self.project = project
        self.timeout = timeout
        self._transport = transport

    def get_account_id(self, token: str) -> Optional[str]:
        if not self.base_url:
            logger.warning("event=provider_session_rejected reason=auth_provider_not_configured")
            return None
        headers = {"Authorization": f"Bearer {token}"}
        if self.project:
            headers["X-Project"] = self.project
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(f"{self.base_url}/account", headers=headers)
        except httpx.TimeoutException as exc:
            raise ServiceUnavailable("Authentication provider timed out") from exc
        except httpx.HTTPError as exc:
            raise ServiceUnavailable("Authentication provider unreachable") from exc

        if response.status_code in (401, 403, 404):
            return None
        if response.status_code >= 400:
            raise ServiceUnavailable(f"Authentication provider responded with {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceUnavailable("Authentication provider returned an unreadable account") from exc
        if not isinstance(data, dict):
            raise ServiceUnavailable("Authentication provider returned an unreadable account")
        return data.get("id") or data.get("$id")


def _local_principal(token: str, user_data: Optional[str], prefix: str) -> AuthenticatedPrincipal:
    if not user_data:
        raise Unauthenticated("User data not found")
    try:
        user = json.loads(unquote(user_data))
    except ValueError:
        raise Unauthenticated("User data is unreadable")
    if not isinstance(user, dict) or not (user.get("id") or user.get("$id")):
        raise Unauthenticated("User data has no user id")
    user_id = str(user.get("id") or user.get("$id"))

    # Local tokens look like custom_<userId>_<issuedAt>; when the embedded id
    # is present it has to agree with the side channel.
    body = token[len(prefix):]
    embedded = body.rsplit("_", 1)[0] if "_" in body else ""
    if embedded and embedded != user_id:
        logger.warning("event=local_session_mismatch token_user=%s cookie_user=%s", embedded, user_id)
        raise Unauthenticated("Session does not match user data")
    return AuthenticatedPrincipal(user_id=user_id)


def parse_session(
    cookies: Mapping[str, str],
    *,
    session_cookie: str,
    user_data_cookie: str,
    custom_prefix: str,
) -> Session:
    token = cookies.get(session_cookie)
    if not token:
        raise Unauthenticated("Not authenticated")
    if token.startswith(custom_prefix):
        return LocalSession(_local_principal(token, cookies.get(user_data_cookie), custom_prefix))
    return ProviderSession(token)


def resolve_principal(session: Session, auth_client: ProviderAuthClient) -> AuthenticatedPrincipal:
    if isinstance(session, LocalSession):
        return session.principal
    user_id = auth_client.get_account_id(session.token)
    if not user_id:
        raise Unauthenticated("Invalid session")
    return AuthenticatedPrincipal(user_id=str(user_id))
