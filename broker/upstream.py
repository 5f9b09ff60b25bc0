from __future__ import annotations

import logging
import re
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Callable

import httpx

from broker.errors import UpstreamExchangeError, UpstreamProfileError
from broker.models import TokenRecord, UserProfile

LOGGER = logging.getLogger("mcp_auth_broker.upstream")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"

MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
MICROSOFT_GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"
MICROSOFT_SCOPES = [
    "offline_access",
    "User.Read",
    "Mail.Read",
    "Mail.Send",
    "Calendars.Read",
    "Calendars.ReadWrite",
    "Contacts.Read",
]

DEFAULT_TIMEOUT_SECONDS = 10.0
EXCHANGE_FAILED_MESSAGE = "Failed to fetch access token"
_ERROR_CODE_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def _parse_github_profile(payload: dict) -> UserProfile:
    login = payload.get("login")
    if not isinstance(login, str) or not login:
        raise UpstreamProfileError("GitHub profile is missing login.")
    return UserProfile(
        id=login,
        login=login,
        name=payload.get("name") or "",
        email=payload.get("email") or "",
    )


def _parse_microsoft_profile(payload: dict) -> UserProfile:
    user_id = payload.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise UpstreamProfileError("Microsoft profile is missing id.")
    email = payload.get("mail") or payload.get("userPrincipalName") or ""
    return UserProfile(
        id=user_id,
        login=payload.get("userPrincipalName") or email or user_id,
        name=payload.get("displayName") or "",
        email=email,
    )


@dataclass
class ProviderConfig:
    name: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    profile_url: str
    scopes: list[str]
    parse_profile: Callable[[dict], UserProfile]
    label: str = ""
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    # Providers that omit expires_in (GitHub OAuth apps) get this lifetime.
    default_expires_in: int = 8 * 60 * 60
    send_scope_on_token_request: bool = False

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    @property
    def display_name(self) -> str:
        return self.label or self.name.title()


def github_provider(client_id: str, client_secret: str) -> ProviderConfig:
    return ProviderConfig(
        name="github",
        client_id=client_id,
        client_secret=client_secret,
        authorize_url=GITHUB_AUTHORIZE_URL,
        token_url=GITHUB_TOKEN_URL,
        profile_url=GITHUB_USER_URL,
        scopes=["read:user"],
        parse_profile=_parse_github_profile,
        label="GitHub",
    )


def microsoft_provider(
    client_id: str,
    client_secret: str,
    *,
    tenant: str = "common",
) -> ProviderConfig:
    base = f"{MICROSOFT_LOGIN_URL}/{tenant}/oauth2/v2.0"
    return ProviderConfig(
        name="microsoft",
        client_id=client_id,
        client_secret=client_secret,
        authorize_url=f"{base}/authorize",
        token_url=f"{base}/token",
        profile_url=MICROSOFT_GRAPH_ME_URL,
        scopes=list(MICROSOFT_SCOPES),
        parse_profile=_parse_microsoft_profile,
        label="Microsoft",
        extra_authorize_params={
            "response_mode": "query",
            "prompt": "select_account",
            "domain_hint": "consumers",
        },
        default_expires_in=60 * 60,
        send_scope_on_token_request=True,
    )


@dataclass
class TokenResult:
    access_token: str
    refresh_token: str | None
    expires_in: int
    expires_at: float
    issued_at: float
    scope: str

    def to_record(self, profile: UserProfile | None = None) -> TokenRecord:
        return TokenRecord(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            issued_at=self.issued_at,
            scope=self.scope,
            profile=profile,
        )

    @classmethod
    def from_payload(cls, payload: dict, *, default_expires_in: int) -> "TokenResult":
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in", default_expires_in)
        scope = payload.get("scope", "")

        if not isinstance(access_token, str) or not access_token:
            raise UpstreamExchangeError(502, f"{EXCHANGE_FAILED_MESSAGE}: missing access_token.")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise UpstreamExchangeError(502, f"{EXCHANGE_FAILED_MESSAGE}: invalid refresh_token.")
        if isinstance(expires_in, str) and expires_in.isdigit():
            expires_in = int(expires_in)
        if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
            raise UpstreamExchangeError(502, f"{EXCHANGE_FAILED_MESSAGE}: invalid expires_in.")
        if not isinstance(scope, str):
            scope = ""

        issued_at = time.time()
        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_in=expires_in,
            expires_at=issued_at + expires_in,
            issued_at=issued_at,
            scope=scope,
        )


def build_authorize_url(
    endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    extra_params: dict[str, str] | None = None,
) -> str:
    # Extras go first so they can never override the core parameters.
    query = dict(extra_params or {})
    query.update(
        {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
        }
    )

    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urllib.parse.urlencode(query)}"


def _sanitized_error(status_code: int, payload: object) -> UpstreamExchangeError:
    code = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(code, str) and _ERROR_CODE_RE.match(code):
        return UpstreamExchangeError(status_code, f"{EXCHANGE_FAILED_MESSAGE} ({code}).")
    return UpstreamExchangeError(status_code, f"{EXCHANGE_FAILED_MESSAGE}.")


def _json_or_none(response: httpx.Response) -> object:
    try:
        return response.json()
    except ValueError:
        return None


async def _token_request(
    provider: ProviderConfig,
    payload: dict[str, str],
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResult:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout)
    grant_type = payload.get("grant_type")

    try:
        response = await http_client.post(
            provider.token_url,
            data=payload,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except httpx.TimeoutException as error:
        LOGGER.warning("Token request to %s timed out (grant=%s)", provider.name, grant_type)
        raise UpstreamExchangeError(504, f"{EXCHANGE_FAILED_MESSAGE}: provider timed out.") from error
    except httpx.HTTPError as error:
        LOGGER.warning(
            "Token request to %s failed (grant=%s): %s",
            provider.name,
            grant_type,
            type(error).__name__,
        )
        raise UpstreamExchangeError(502, f"{EXCHANGE_FAILED_MESSAGE}: provider unreachable.") from error
    finally:
        if own_client:
            await http_client.aclose()

    body = _json_or_none(response)
    LOGGER.info(
        "Token request provider=%s grant=%s -> %s",
        provider.name,
        grant_type,
        response.status_code,
    )
    if response.is_error:
        raise _sanitized_error(response.status_code, body)
    if not isinstance(body, dict):
        raise UpstreamExchangeError(502, f"{EXCHANGE_FAILED_MESSAGE}: unreadable response.")
    if body.get("error") and not body.get("access_token"):
        raise _sanitized_error(400, body)

    return TokenResult.from_payload(body, default_expires_in=provider.default_expires_in)


async def exchange_code(
    provider: ProviderConfig,
    code: str,
    redirect_uri: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResult:
    payload = {
        "grant_type": "authorization_code",
        "client_id": provider.client_id,
        "client_secret": provider.client_secret,
        "code": code,
        "redirect_uri": redirect_uri,
    }
    if provider.send_scope_on_token_request:
        payload["scope"] = provider.scope
    return await _token_request(provider, payload, client=client, timeout=timeout)


async def refresh_token(
    provider: ProviderConfig,
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> TokenResult:
    payload = {
        "grant_type": "refresh_token",
        "client_id": provider.client_id,
        "client_secret": provider.client_secret,
        "refresh_token": refresh_token,
    }
    if provider.send_scope_on_token_request:
        payload["scope"] = provider.scope
    return await _token_request(provider, payload, client=client, timeout=timeout)


async def fetch_profile(
    provider: ProviderConfig,
    access_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> UserProfile:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout)

    try:
        response = await http_client.get(
            provider.profile_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        LOGGER.warning(
            "Profile request to %s failed with status %s",
            provider.name,
            error.response.status_code,
        )
        raise UpstreamProfileError(
            f"Could not read the {provider.name} profile (status {error.response.status_code})."
        ) from error
    except httpx.HTTPError as error:
        LOGGER.warning("Profile request to %s failed: %s", provider.name, type(error).__name__)
        raise UpstreamProfileError(f"Could not reach {provider.name} to read the profile.") from error
    finally:
        if own_client:
            await http_client.aclose()

    payload = _json_or_none(response)
    if not isinstance(payload, dict):
        raise UpstreamProfileError(f"The {provider.name} profile response was unreadable.")
    return provider.parse_profile(payload)
