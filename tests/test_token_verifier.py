import pytest
import requests

from conftest import KEYCLOAK_URL, issuer_for, sign_token
from marketplace_bff.errors import AuthError, AuthErrorKind
from marketplace_bff.session_data import AuthType
from marketplace_bff.token_verifier import TokenVerifier, extract_roles


class CountingFetcher:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, uri, timeout):
        self.calls.append(uri)
        item = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item


def _verifier(settings, fetcher, **kwargs) -> TokenVerifier:
    return TokenVerifier.from_settings(settings, fetcher=fetcher, sleep=lambda s: None, **kwargs)


def test_valid_token_verifies(settings, jwks, make_token) -> None:
    fetcher = CountingFetcher(jwks)
    verified = _verifier(settings, fetcher).verify(make_token(sub="abc"))
    assert verified.subject == "abc"
    assert verified.auth_type == AuthType.CUSTOMERS
    assert verified.issuer == f"{KEYCLOAK_URL}/realms/Customer"
    assert verified.roles == ["customer"]
    assert verified.header["kid"] == "test-key-1"
    assert fetcher.calls == [f"{KEYCLOAK_URL}/realms/Customer/protocol/openid-connect/certs"]


def test_each_realm_maps_to_its_auth_type(settings, jwks, make_token) -> None:
    v = _verifier(settings, CountingFetcher(jwks))
    assert v.verify(make_token(realm="developer")).auth_type == AuthType.DEVELOPERS
    assert v.verify(make_token(realm="vendor")).auth_type == AuthType.VENDORS


def test_key_set_is_cached(settings, jwks, make_token) -> None:
    fetcher = CountingFetcher(jwks)
    v = _verifier(settings, fetcher)
    v.verify(make_token())
    v.verify(make_token())
    assert len(fetcher.calls) == 1


def test_cache_expires_after_ttl(settings, jwks, make_token) -> None:
    now = [1000.0]
    fetcher = CountingFetcher(jwks)
    v = _verifier(settings, fetcher, clock=lambda: now[0])
    v.verify(make_token())
    now[0] += settings.JWKS_CACHE_TTL_SECONDS + 1
    v.verify(make_token())
    assert len(fetcher.calls) == 2


def test_expired_token(settings, jwks, make_token) -> None:
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher(jwks)).verify(make_token(expires_in=-120))
    assert exc.value.kind == AuthErrorKind.TOKEN_EXPIRED
    assert exc.value.status_code == 401


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "a.b.c.d", "not-base64!.x.y"])
def test_malformed_tokens_fail_without_fetching(settings, jwks, token) -> None:
    fetcher = CountingFetcher(jwks)
    with pytest.raises(AuthError) as exc:
        _verifier(settings, fetcher).verify(token)
    assert exc.value.kind == AuthErrorKind.TOKEN_INVALID
    assert fetcher.calls == []


def test_untrusted_issuer_rejected_without_fetching(settings, jwks, rsa_key) -> None:
    fetcher = CountingFetcher(jwks)
    token = sign_token(rsa_key[0], {"iss": "https://evil.example/realms/Customer", "sub": "x", "exp": 9_999_999_999})
    with pytest.raises(AuthError) as exc:
        _verifier(settings, fetcher).verify(token)
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID
    assert fetcher.calls == []


def test_missing_kid_is_invalid(settings, jwks, make_token) -> None:
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher(jwks)).verify(make_token(kid=None))
    assert exc.value.kind == AuthErrorKind.TOKEN_INVALID


def test_disallowed_algorithm(settings, jwks) -> None:
    from jose import jwt

    token = jwt.encode({"iss": issuer_for("Customer"), "sub": "x", "exp": 9_999_999_999}, "secret",
                       algorithm="HS256", headers={"kid": "test-key-1"})
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher(jwks)).verify(token)
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID


def test_wrong_signing_key(settings, jwks, make_token, other_rsa_key) -> None:
    # Signed with a different private key but claiming the published kid.
    token = make_token(private_pem=other_rsa_key[0])
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher(jwks)).verify(token)
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID


def test_tampered_payload(settings, jwks, make_token) -> None:
    header, payload, sig = make_token().split(".")
    forged = make_token(sub="admin").split(".")[1]
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher(jwks)).verify(".".join([header, forged, sig[::-1]]))
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID


def test_unknown_kid_refetches_once(settings, jwks, other_rsa_key, make_token) -> None:
    now = [1000.0]
    rotated = {"keys": [jwks["keys"][0], other_rsa_key[1]]}
    fetcher = CountingFetcher(jwks, rotated)
    v = _verifier(settings, fetcher, clock=lambda: now[0])
    v.verify(make_token())
    now[0] += settings.JWKS_MIN_REFRESH_SECONDS
    verified = v.verify(make_token(kid="rotated-key-2", private_pem=other_rsa_key[0]))
    assert verified.header["kid"] == "rotated-key-2"
    assert len(fetcher.calls) == 2


def test_unknown_kid_after_refetch_is_rejected(settings, jwks, make_token) -> None:
    now = [1000.0]
    fetcher = CountingFetcher(jwks)
    v = _verifier(settings, fetcher, clock=lambda: now[0])
    v.verify(make_token())
    now[0] += settings.JWKS_MIN_REFRESH_SECONDS + 1
    with pytest.raises(AuthError) as exc:
        v.verify(make_token(kid="never-published"))
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID
    assert len(fetcher.calls) == 2


def test_unknown_kids_do_not_force_repeated_fetches(settings, jwks, make_token) -> None:
    now = [1000.0]
    fetcher = CountingFetcher(jwks)
    v = _verifier(settings, fetcher, clock=lambda: now[0])
    for i in range(20):
        with pytest.raises(AuthError) as exc:
            v.verify(make_token(kid=f"bogus-{i}"))
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID
    assert len(fetcher.calls) == 1

    # Once the window has passed a single refetch is allowed, then it closes again.
    now[0] += settings.JWKS_MIN_REFRESH_SECONDS
    for i in range(5):
        with pytest.raises(AuthError):
            v.verify(make_token(kid=f"later-{i}"))
    assert len(fetcher.calls) == 2


def test_failed_forced_refresh_is_not_retried_inside_window(settings, jwks, make_token) -> None:
    now = [1000.0]
    fetcher = CountingFetcher(jwks, requests.ConnectionError("down"))
    v = _verifier(settings, fetcher, clock=lambda: now[0])
    v.fetch_retries = 0
    v.verify(make_token())
    now[0] += settings.JWKS_MIN_REFRESH_SECONDS
    with pytest.raises(AuthError) as exc:
        v.verify(make_token(kid="bogus"))
    assert exc.value.kind == AuthErrorKind.PROVIDER_ERROR
    with pytest.raises(AuthError) as exc:
        v.verify(make_token(kid="bogus-again"))
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID
    assert len(fetcher.calls) == 2


def test_fetch_is_retried(settings, jwks, make_token) -> None:
    fetcher = CountingFetcher(requests.ConnectionError("down"), jwks)
    _verifier(settings, fetcher).verify(make_token())
    assert len(fetcher.calls) == 2


def test_fetch_failure_is_provider_error(settings, make_token) -> None:
    fetcher = CountingFetcher(requests.ConnectionError("down"))
    with pytest.raises(AuthError) as exc:
        _verifier(settings, fetcher).verify(make_token())
    assert exc.value.kind == AuthErrorKind.PROVIDER_ERROR
    assert len(fetcher.calls) == 1 + settings.JWKS_FETCH_RETRIES


def test_malformed_key_set_is_provider_error(settings, make_token) -> None:
    with pytest.raises(AuthError) as exc:
        _verifier(settings, CountingFetcher({"nope": []})).verify(make_token())
    assert exc.value.kind == AuthErrorKind.PROVIDER_ERROR


def test_audience_is_checked_when_configured(settings, jwks, make_token) -> None:
    v = _verifier(settings, CountingFetcher(jwks))
    v.audience = "marketplace-api"
    assert v.verify(make_token(aud="marketplace-api")).subject == "user-123"
    with pytest.raises(AuthError) as exc:
        v.verify(make_token(aud="someone-else"))
    assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID


def test_extract_roles() -> None:
    assert extract_roles({"realm_access": {"roles": ["a", "b", 3]}}) == ["a", "b"]
    assert extract_roles({}) == []
