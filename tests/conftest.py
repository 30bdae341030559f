from __future__ import annotations

from pathlib import Path

import pytest

from api_pulse import db
from api_pulse.models import Connection
from api_pulse.settings import Settings
from api_pulse.vault import CredentialVault


TEST_KEY = "0123456789abcdef0123456789abcdef"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    s = Settings(
        db_path=str(tmp_path / "api-pulse.db"),
        encryption_key=TEST_KEY,
        max_concurrency=4,
        probe_timeout_ms=5000,
        evaluate_alerts_after_cycle=False,
        webhook_url="",
        slack_webhook_url="",
        telegram_bot_token="",
        telegram_chat_id="",
        smtp_host="",
    )
    db.ensure_schema(s)
    return s


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture()
def user_id(settings: Settings) -> str:
    return str(db.create_user(settings, email="ops@example.com", plan="BUSINESS")["id"])


def make_connection(
    settings: Settings,
    vault: CredentialVault,
    user_id: str,
    *,
    base_url: str = "http://127.0.0.1:9",
    provider: str = "stripe",
    secrets: dict[str, str] | None = None,
) -> Connection:
    creds = secrets if secrets is not None else {"api_key": "sk_test_123"}
    return db.insert_connection(
        settings,
        user_id=user_id,
        name=f"{provider} conn",
        provider=provider,
        base_url=base_url,
        credentials={k: vault.encrypt(v) for k, v in creds.items()},
    )
