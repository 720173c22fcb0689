import pytest
from crowdfund.errors import AppError, ErrorCode
from crowdfund.services.token_service import TokenBlacklist, TokenService


class FakeClock:

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_issue_and_validate_round_trip():
    tokens = TokenService('secret')
    assert tokens.validate(tokens.issue(42)) == 42


def test_tokens_issued_back_to_back_differ():
    tokens = TokenService('secret')
    assert tokens.issue(1) != tokens.issue(1)


def test_tampered_token_is_invalid():
    tokens = TokenService('secret')
    other = TokenService('another-secret')
    with pytest.raises(AppError) as exc:
        tokens.validate(other.issue(1))
    assert exc.value.code == ErrorCode.INVALID_TOKEN


def test_garbage_token_is_invalid():
    with pytest.raises(AppError) as exc:
        TokenService('secret').validate('not-a-jwt')
    assert exc.value.code == ErrorCode.INVALID_TOKEN


def test_missing_token_is_unauthorized():
    with pytest.raises(AppError) as exc:
        TokenService('secret').validate(None)
    assert exc.value.code == ErrorCode.UNAUTHORIZED


def test_expired_token_reports_expiry():
    tokens = TokenService('secret', ttl_hours=-1)
    with pytest.raises(AppError) as exc:
        tokens.validate(tokens.issue(7))
    assert exc.value.code == ErrorCode.TOKEN_EXPIRED
    assert exc.value.status == 401


def test_refresh_accepts_expired_but_signed_token():
    expired = TokenService('secret', ttl_hours=-1).issue(7)
    fresh = TokenService('secret').refresh(expired)
    assert TokenService('secret').validate(fresh) == 7


def test_refresh_rejects_wrong_signature():
    expired = TokenService('other', ttl_hours=-1).issue(7)
    with pytest.raises(AppError) as exc:
        TokenService('secret').refresh(expired)
    assert exc.value.code == ErrorCode.INVALID_TOKEN


def test_revoked_token_is_rejected_by_validate_and_refresh():
    tokens = TokenService('secret')
    token = tokens.issue(3)
    tokens.revoke(token)
    for call in (tokens.validate, tokens.refresh):
        with pytest.raises(AppError) as exc:
            call(token)
        assert exc.value.code == ErrorCode.INVALID_TOKEN


def test_blacklist_entries_expire():
    clock = FakeClock()
    blacklist = TokenBlacklist(clock=clock)
    blacklist.add('a', ttl_seconds=10)
    blacklist.add('b', ttl_seconds=100)
    assert blacklist.contains('a')

    clock.now += 50
    assert not blacklist.contains('a')
    assert blacklist.contains('b')
    assert len(blacklist) == 1


def test_blacklist_purge_expired():
    clock = FakeClock()
    blacklist = TokenBlacklist(clock=clock)
    blacklist.add('a', ttl_seconds=1)
    blacklist.add('b', ttl_seconds=1)
    blacklist.add('c', ttl_seconds=60)
    clock.now += 5
    assert blacklist.purge_expired() == 2
    assert len(blacklist) == 1


def test_blacklist_stays_bounded_when_tokens_are_never_presented():
    clock = FakeClock()
    blacklist = TokenBlacklist(clock=clock, purge_interval=60)
    for n in range(1000):
        blacklist.add(f'token-{n}', ttl_seconds=10)
        clock.now += 1
    # Only the last purge window plus the live TTL can remain.
    assert len(blacklist) <= 70
    assert blacklist.contains('token-999')
    assert not blacklist.contains('token-0')


def test_injected_blacklist_is_used():
    blacklist = TokenBlacklist()
    tokens = TokenService('secret', blacklist=blacklist)
    token = tokens.issue(1)
    blacklist.add(token, 60)
    with pytest.raises(AppError):
        tokens.validate(token)


def test_purpose_token_round_trip():
    tokens = TokenService('secret')
    token = tokens.issue_purpose_token('a@example.com', 'verify_email')
    assert tokens.read_purpose_token(token, 'verify_email') == 'a@example.com'


def test_purpose_token_cannot_be_reused_for_another_purpose():
    tokens = TokenService('secret')
    token = tokens.issue_purpose_token('a@example.com', 'verify_email')
    with pytest.raises(AppError) as exc:
        tokens.read_purpose_token(token, 'reset_password')
    assert exc.value.code == ErrorCode.INVALID_TOKEN


def test_login_token_is_not_a_purpose_token():
    tokens = TokenService('secret')
    with pytest.raises(AppError):
        tokens.read_purpose_token(tokens.issue(1), 'reset_password')
