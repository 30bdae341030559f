from __future__ import annotations

import base64

import pytest

from api_pulse.auth import BasicAuth, BearerAuth, CustomHeaderAuth, NoAuth, auth_for_provider
from api_pulse.errors import DecryptionError
from api_pulse.vault import CredentialVault


KEY = "0123456789abcdef0123456789abcdef"


def test_envelope_shape_and_roundtrip() -> None:
    v = CredentialVault(KEY)
    env = v.encrypt("sk_live_secret")
    parts = env.split(":")
    assert len(parts) == 3
    assert len(bytes.fromhex(parts[0])) == 16
    assert len(bytes.fromhex(parts[1])) == 16
    assert "sk_live_secret" not in env
    assert v.decrypt(env) == "sk_live_secret"
    # Fresh IV each time.
    assert v.encrypt("sk_live_secret") != env


def test_malformed_envelopes_fail_closed() -> None:
    v = CredentialVault(KEY)
    env = v.encrypt("hello")
    iv, tag, ct = env.split(":")

    for bad in ("", "abc", f"{iv}:{tag}", f"{iv}:{tag}:{ct}:00", f"zz:{tag}:{ct}", f"{iv}:00:{ct}"):
        with pytest.raises(DecryptionError):
            v.decrypt(bad)

    flipped = ct[:-1] + ("0" if ct[-1] != "0" else "1")
    with pytest.raises(DecryptionError):
        v.decrypt(f"{iv}:{tag}:{flipped}")


def test_wrong_key_fails_authentication() -> None:
    env = CredentialVault(KEY).encrypt("hello")
    other = CredentialVault("fedcba9876543210fedcba9876543210")
    with pytest.raises(DecryptionError):
        other.decrypt(env)


def test_key_length_enforced() -> None:
    with pytest.raises(ValueError):
        CredentialVault("too-short")


def test_provider_auth_variants() -> None:
    stripe = auth_for_provider("stripe", {"api_key": "sk"})
    assert isinstance(stripe, BearerAuth)
    assert stripe.build_auth_headers() == {"Authorization": "Bearer sk"}

    twilio = auth_for_provider("Twilio", {"account_sid": "AC1", "auth_token": "tok"})
    assert isinstance(twilio, BasicAuth)
    expected = base64.b64encode(b"AC1:tok").decode("ascii")
    assert twilio.build_auth_headers() == {"Authorization": f"Basic {expected}"}

    gh = auth_for_provider("github", {"token": "ghp"})
    headers = gh.build_auth_headers()
    assert headers["Authorization"] == "Bearer ghp"
    assert headers["Accept"] == "application/vnd.github.v3+json"

    custom = auth_for_provider("custom", {"api_key": "k"}, header_name="X-Api-Key")
    assert isinstance(custom, CustomHeaderAuth)
    assert custom.build_auth_headers() == {"X-Api-Key": "k"}

    assert isinstance(auth_for_provider("other", {}), NoAuth)


def test_provider_auth_missing_credentials() -> None:
    with pytest.raises(ValueError):
        auth_for_provider("twilio", {"account_sid": "AC1"})
    with pytest.raises(ValueError):
        auth_for_provider("custom", {"api_key": "k"})
    with pytest.raises(ValueError):
        auth_for_provider("stripe", {})
