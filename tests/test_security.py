from datetime import timedelta

import jwt
import pytest
from pydantic import ValidationError as SettingsValidationError

from app.core.config import Settings, redact_secrets, settings
from app.core.exceptions import UnauthorizedError
from app.core.security import create_access_token, decode_token, is_valid_service_key


def test_token_roundtrip_carries_subject():
    payload = decode_token(create_access_token("citizen-42"))
    assert payload["sub"] == "citizen-42"


def test_expired_token_is_rejected():
    token = create_access_token("citizen-42", expires_delta=timedelta(seconds=-10))
    with pytest.raises(UnauthorizedError, match="expired"):
        decode_token(token)


def test_token_signed_with_other_key_is_rejected():
    token = jwt.encode({"sub": "citizen-42"}, "some-other-secret", algorithm="HS256")
    with pytest.raises(UnauthorizedError):
        decode_token(token)


def test_token_without_subject_is_rejected():
    token = jwt.encode({"scope": "alerts"}, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(UnauthorizedError):
        decode_token(token)


def test_service_key_comparison(monkeypatch):
    monkeypatch.setattr(settings, "SERVICE_API_KEY", "s3cret")
    assert is_valid_service_key("s3cret")
    assert not is_valid_service_key("S3CRET")
    assert not is_valid_service_key(None)

    monkeypatch.setattr(settings, "SERVICE_API_KEY", None)
    assert not is_valid_service_key("s3cret")


def test_database_url_is_normalized_to_asyncpg():
    configured = Settings(DATABASE_URL="postgres://user:pw@db:5432/alerts")
    assert configured.DATABASE_URL == "postgresql+asyncpg://user:pw@db:5432/alerts"

    assembled = Settings(DATABASE_URL=None, POSTGRES_HOST="pg", POSTGRES_DB="x")
    assert assembled.DATABASE_URL.startswith("postgresql+asyncpg://")
    assert "@pg:5432/x" in assembled.DATABASE_URL


def test_production_requires_service_key():
    with pytest.raises(SettingsValidationError):
        Settings(ENVIRONMENT="production", SERVICE_API_KEY=None)


def test_cors_origins_from_comma_separated_string():
    configured = Settings(CORS_ORIGINS="https://a.example, https://b.example")
    assert configured.CORS_ORIGINS == ["https://a.example", "https://b.example"]


def test_log_redaction_masks_tokens_and_secrets():
    token = create_access_token("citizen-1")
    event = redact_secrets(None, "info", {
        "event": "call",
        "header": f"Bearer {token}",
        "headers": {"x-service-key": "abc", "accept": "json"},
        "SERVICE_API_KEY": "abc",
    })

    assert token not in event["header"]
    assert event["headers"]["x-service-key"] == "***REDACTED***"
    assert event["headers"]["accept"] == "json"
    assert event["SERVICE_API_KEY"] == "***REDACTED***"
