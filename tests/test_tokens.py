import base64
import json

import pytest

from pinguard.service.tokens import TokenExpired, TokenInvalid, TokenSigner


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _signer(clock=None, **overrides):
    kwargs = {"issuer": "pinguard", "audience": "pinguard-clients"}
    kwargs.update(overrides)
    return TokenSigner("unit-test-secret", clock=clock or FakeClock(), **kwargs)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def test_roundtrip_keeps_claims_and_adds_standard_ones():
    clock = FakeClock()
    signer = _signer(clock)
    token = signer.encode({"sub": "user-1", "biometric": True}, ttl_seconds=60)

    payload = signer.decode(token)
    assert payload["sub"] == "user-1"
    assert payload["biometric"] is True
    assert payload["iss"] == "pinguard"
    assert payload["aud"] == "pinguard-clients"
    assert payload["exp"] - payload["iat"] == 60


def test_expired_token_is_distinguished_from_invalid():
    clock = FakeClock()
    signer = _signer(clock)
    token = signer.encode({"sub": "user-1"}, ttl_seconds=60)

    clock.now += 61
    with pytest.raises(TokenExpired):
        signer.decode(token)


def test_leeway_extends_acceptance():
    clock = FakeClock()
    signer = _signer(clock, leeway_seconds=30)
    token = signer.encode({"sub": "user-1"}, ttl_seconds=60)
    clock.now += 70
    assert signer.decode(token)["sub"] == "user-1"


def test_tampered_payload_is_invalid():
    signer = _signer()
    header, _, sig = signer.encode({"sub": "user-1"}, ttl_seconds=60).split(".")
    forged = _b64({"sub": "user-2", "iss": "pinguard", "aud": "pinguard-clients", "exp": 9_999_999_999})
    with pytest.raises(TokenInvalid):
        signer.decode(f"{header}.{forged}.{sig}")


def test_expired_forgery_reports_invalid_not_expired():
    clock = FakeClock()
    signer = _signer(clock)
    header, payload, _ = signer.encode({"sub": "user-1"}, ttl_seconds=1).split(".")
    clock.now += 100
    with pytest.raises(TokenInvalid):
        signer.decode(f"{header}.{payload}.AAAA")


def test_alg_none_is_rejected():
    signer = _signer()
    header = _b64({"alg": "none", "typ": "JWT"})
    payload = _b64({"sub": "user-1", "iss": "pinguard", "aud": "pinguard-clients", "exp": 9_999_999_999})
    with pytest.raises(TokenInvalid):
        signer.decode(f"{header}.{payload}.")


def test_wrong_audience_or_issuer_is_invalid():
    token = _signer(audience="other-clients").encode({"sub": "u"}, ttl_seconds=60)
    with pytest.raises(TokenInvalid):
        _signer().decode(token)

    token = _signer(issuer="someone-else").encode({"sub": "u"}, ttl_seconds=60)
    with pytest.raises(TokenInvalid):
        _signer().decode(token)


def test_different_secret_is_invalid():
    token = TokenSigner(
        "another-secret", issuer="pinguard", audience="pinguard-clients"
    ).encode({"sub": "u"}, ttl_seconds=60)
    with pytest.raises(TokenInvalid):
        _signer().decode(token)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
def test_malformed_tokens(token):
    with pytest.raises(TokenInvalid):
        _signer().decode(token)
