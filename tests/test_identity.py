from utils.identity import LocalIdentityService


def test_get_or_create_is_idempotent(identity):
    assert identity.get_user_by_email("a@b.com") is None

    uid = identity.get_or_create_user("a@b.com")
    assert uid
    assert identity.get_or_create_user("a@b.com") == uid
    assert identity.get_user_by_email("a@b.com") == uid
    assert identity.get_or_create_user("c@d.com") != uid


def test_create_user_for_existing_email_returns_existing_uid(identity):
    uid = identity.create_user("a@b.com")
    assert identity.create_user("a@b.com") == uid


def test_minted_token_round_trips(identity):
    uid = identity.get_or_create_user("a@b.com")
    token = identity.mint_token(uid)
    assert identity.decode_token(token) == uid


def test_token_from_another_secret_is_rejected(identity, session_factory):
    other = LocalIdentityService(session_factory, secret="someone-else")
    token = other.mint_token("1")
    assert identity.decode_token(token) is None
    assert identity.decode_token("not-a-token") is None


def test_expired_token_is_rejected(session_factory):
    service = LocalIdentityService(session_factory, secret="test-secret", expires_minutes=-1)
    assert service.decode_token(service.mint_token("1")) is None
