from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from accessflow.service.errors import (
    BadRequestError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
)
from accessflow.service.recovery import PasswordResetService
from accessflow.service.tokens import Scope
from accessflow.storage.models import Role


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com", Role.OPERATOR)


async def test_request_stores_token_and_emails_link(recovery, alice, store, tokens, notifier):
    token = await recovery.request_reset("alice@example.com")

    saved = store.get_user(alice.id)
    assert saved.reset_token == token
    assert saved.reset_expires_at > datetime.now(timezone.utc) + timedelta(minutes=14)
    assert tokens.verify(token, Scope.RESET)["sub"] == alice.id

    message = notifier.last_for("alice@example.com")
    assert message["subject"] == "Reset Your Password"
    link = next(part for part in message["body"].split() if part.startswith("https://"))
    assert urlparse(link).path == "/reset-password"
    assert parse_qs(urlparse(link).query)["token"] == [token]


async def test_unknown_email_not_found(recovery):
    with pytest.raises(NotFoundError):
        await recovery.request_reset("nobody@example.com")


async def test_reset_replaces_credential(recovery, auth, alice, store):
    token = await recovery.request_reset("alice@example.com")
    await recovery.reset_credential(token, "BrandNewPass1!")

    saved = store.get_user(alice.id)
    assert saved.reset_token is None
    assert saved.reset_expires_at is None
    result = await auth.login("alice@example.com", "BrandNewPass1!")
    assert result.stage == "mfa_setup"
    with pytest.raises(InvalidCredentialsError):
        await auth.login("alice@example.com", "CorrectHorse9!")


async def test_token_is_single_use(recovery, alice):
    token = await recovery.request_reset("alice@example.com")
    await recovery.reset_credential(token, "BrandNewPass1!")
    with pytest.raises(TokenInvalidError):
        await recovery.reset_credential(token, "AnotherPass1!")


async def test_newer_request_supersedes_older(recovery, alice):
    first = await recovery.request_reset("alice@example.com")
    second = await recovery.request_reset("alice@example.com")
    with pytest.raises(TokenInvalidError):
        await recovery.reset_credential(first, "BrandNewPass1!")
    await recovery.reset_credential(second, "BrandNewPass1!")


async def test_stored_expiry_enforced(recovery, alice, store):
    token = await recovery.request_reset("alice@example.com")
    saved = store.get_user(alice.id)
    saved.reset_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    store.save_user(saved)
    with pytest.raises(TokenInvalidError):
        await recovery.reset_credential(token, "BrandNewPass1!")


async def test_token_for_other_principal_rejected(recovery, alice, make_user, store, tokens):
    bob = make_user("bob@example.com", Role.OPERATOR)
    forged = tokens.issue(bob.id, Scope.RESET)
    saved = store.get_user(alice.id)
    saved.reset_token = forged
    saved.reset_expires_at = datetime.now(timezone.utc) + timedelta(minutes=15)
    store.save_user(saved)
    with pytest.raises(TokenInvalidError):
        await recovery.reset_credential(forged, "BrandNewPass1!")


async def test_wrong_scope_rejected(recovery, alice, store, tokens):
    setup = tokens.issue(alice.id, Scope.SETUP)
    saved = store.get_user(alice.id)
    saved.reset_token = setup
    saved.reset_expires_at = datetime.now(timezone.utc) + timedelta(minutes=15)
    store.save_user(saved)
    with pytest.raises(TokenInvalidError):
        await recovery.reset_credential(setup, "BrandNewPass1!")


@pytest.mark.parametrize("token,password", [("", "BrandNewPass1!"), ("abc", "")])
async def test_missing_fields_rejected(recovery, token, password):
    with pytest.raises(BadRequestError):
        await recovery.reset_credential(token, password)


async def test_failed_email_keeps_token(store, tokens, failing_notifier, settings, alice):
    service = PasswordResetService(store, tokens, failing_notifier, settings)
    token = await service.request_reset("alice@example.com")
    assert store.get_user(alice.id).reset_token == token
