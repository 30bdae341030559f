"""Provider auth variants.

Each variant carries only the fields it needs and builds its own headers;
``auth_for_provider`` picks the variant from the connection's provider tag.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Protocol, Union


class AuthScheme(Protocol):
    def build_auth_headers(self) -> dict[str, str]: ...


@dataclass(frozen=True)
class BearerAuth:
    token: str
    extra_headers: dict[str, str] = field(default_factory=dict)

    def build_auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", **self.extra_headers}


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str

    def build_auth_headers(self) -> dict[str, str]:
        raw = f"{self.username}:{self.password}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}


@dataclass(frozen=True)
class CustomHeaderAuth:
    header_name: str
    value: str

    def build_auth_headers(self) -> dict[str, str]:
        return {self.header_name: self.value}


@dataclass(frozen=True)
class NoAuth:
    def build_auth_headers(self) -> dict[str, str]:
        return {}


ProviderAuth = Union[BearerAuth, BasicAuth, CustomHeaderAuth, NoAuth]

SUPPORTED_PROVIDERS = ("stripe", "twilio", "sendgrid", "github", "slack", "custom")


def auth_for_provider(
    provider: str,
    credentials: dict[str, str | None],
    *,
    header_name: str | None = None,
) -> ProviderAuth:
    """
    Map a provider tag plus decrypted credentials to an auth variant.
    Raises ValueError when the credentials the provider needs are missing.
    """
    p = str(provider or "").strip().lower()
    api_key = credentials.get("api_key")
    token = credentials.get("token")

    if p == "twilio":
        sid = credentials.get("account_sid")
        secret = credentials.get("auth_token")
        if not sid or not secret:
            raise ValueError("twilio requires account_sid and auth_token")
        return BasicAuth(username=sid, password=secret)

    if p == "github":
        if not token:
            raise ValueError("github requires token")
        return BearerAuth(token=token, extra_headers={"Accept": "application/vnd.github.v3+json"})

    if p == "slack":
        if not token:
            raise ValueError("slack requires token")
        return BearerAuth(token=token)

    if p in {"stripe", "sendgrid"}:
        if not api_key:
            raise ValueError(f"{p} requires api_key")
        return BearerAuth(token=api_key)

    if p == "custom":
        name = str(header_name or "").strip()
        value = api_key or token
        if not name or not value:
            raise ValueError("custom auth requires header name and api_key or token")
        return CustomHeaderAuth(header_name=name, value=value)

    secret = api_key or token
    if not secret:
        return NoAuth()
    return BearerAuth(token=secret)
