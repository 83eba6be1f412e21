import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from storefront.service.ephemeral import EphemeralTokenGenerator


def test_generate_returns_hex_token_and_its_digest():
    token = EphemeralTokenGenerator(timedelta(hours=24)).generate()
    assert len(token.raw_token) == 64
    int(token.raw_token, 16)
    assert token.token_hash == hashlib.sha256(token.raw_token.encode()).hexdigest()
    assert token.token_hash != token.raw_token


def test_expiry_is_clock_plus_ttl():
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    token = EphemeralTokenGenerator(timedelta(minutes=60), clock=lambda: now).generate()
    assert token.expires_at == now + timedelta(minutes=60)


def test_tokens_are_unique():
    generator = EphemeralTokenGenerator(timedelta(minutes=5))
    raws = {generator.generate().raw_token for _ in range(50)}
    assert len(raws) == 50


@pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-1)])
def test_non_positive_ttl_rejected(ttl):
    with pytest.raises(ValueError):
        EphemeralTokenGenerator(ttl)
