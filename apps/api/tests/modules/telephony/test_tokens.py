"""
Tests for the webhook token store.

These tests verify:
- Minted tokens validate until their expiry and never after
- Validation is repeatable and never extends a token
- Purpose and session binding
- Deletion and the expiry sweep
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.core.security import hash_secret
from app.modules.telephony.models import WebhookToken, WebhookTokenPurpose
from app.modules.telephony.tokens import WebhookTokenStore


async def _token_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(WebhookToken))
    return result.scalar_one()


class TestMint:
    """Tests for WebhookTokenStore.mint."""

    @pytest.mark.asyncio
    async def test_returns_64_hex_characters(self, db, token_store):
        token = await token_store.mint(db)

        assert len(token) == 64
        int(token, 16)

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, db, token_store):
        tokens = {await token_store.mint(db) for _ in range(20)}

        assert len(tokens) == 20

    @pytest.mark.asyncio
    async def test_only_the_hash_is_stored(self, db, token_store):
        token = await token_store.mint(db, call_sid="CA123")

        result = await db.execute(select(WebhookToken))
        record = result.scalar_one()
        assert record.token_hash == hash_secret(token)
        assert record.token_hash != token
        assert record.call_sid == "CA123"

    @pytest.mark.asyncio
    async def test_expiry_is_one_hour_from_mint(self, db, token_store, clock):
        token = await token_store.mint(db)

        record = await token_store.lookup(db, token)
        assert record.expires_at.replace(tzinfo=None) == (
            clock.now + timedelta(hours=1)
        ).replace(tzinfo=None)


class TestValidate:
    """Tests for WebhookTokenStore.validate."""

    @pytest.mark.asyncio
    async def test_fresh_token_is_valid(self, db, token_store):
        token = await token_store.mint(db)

        assert await token_store.validate(db, token) is True

    @pytest.mark.asyncio
    async def test_unknown_token_is_invalid(self, db, token_store):
        assert await token_store.validate(db, "0" * 64) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, ""])
    async def test_missing_token_is_invalid(self, db, token_store, token):
        assert await token_store.validate(db, token) is False

    @pytest.mark.asyncio
    async def test_validation_is_repeatable(self, db, token_store):
        token = await token_store.mint(db)

        results = [await token_store.validate(db, token) for _ in range(5)]

        assert results == [True] * 5

    @pytest.mark.asyncio
    async def test_valid_just_before_expiry(self, db, token_store, clock):
        token = await token_store.mint(db)
        clock.advance(minutes=59, seconds=59)

        assert await token_store.validate(db, token) is True

    @pytest.mark.asyncio
    async def test_invalid_at_and_after_expiry(self, db, token_store, clock):
        token = await token_store.mint(db)

        clock.advance(hours=1)
        assert await token_store.validate(db, token) is False

        clock.advance(seconds=1)
        assert await token_store.validate(db, token) is False

    @pytest.mark.asyncio
    async def test_validation_does_not_extend_expiry(self, db, token_store, clock):
        token = await token_store.mint(db)

        clock.advance(minutes=30)
        assert await token_store.validate(db, token) is True
        clock.advance(minutes=30)

        assert await token_store.validate(db, token) is False

    @pytest.mark.asyncio
    async def test_purpose_must_match(self, db, token_store):
        token = await token_store.mint(db, WebhookTokenPurpose.INSTRUCTION)

        assert await token_store.validate(db, token, WebhookTokenPurpose.INSTRUCTION) is True
        assert (
            await token_store.validate(db, token, WebhookTokenPurpose.RECORDING_STATUS) is False
        )

    @pytest.mark.asyncio
    async def test_session_must_match(self, db, token_store):
        session_id = str(uuid.uuid4())
        token = await token_store.mint(db, session_id=session_id)

        assert await token_store.validate(db, token, session_id=session_id) is True
        assert await token_store.validate(db, token, session_id=str(uuid.uuid4())) is False


class TestDelete:
    """Tests for WebhookTokenStore.delete."""

    @pytest.mark.asyncio
    async def test_deleted_token_is_invalid(self, db, token_store):
        token = await token_store.mint(db)

        await token_store.delete(db, token)

        assert await token_store.validate(db, token) is False

    @pytest.mark.asyncio
    async def test_deleting_unknown_token_is_noop(self, db, token_store):
        kept = await token_store.mint(db)

        await token_store.delete(db, "f" * 64)

        assert await token_store.validate(db, kept) is True


class TestAttachCallSid:
    """Tests for WebhookTokenStore.attach_call_sid."""

    @pytest.mark.asyncio
    async def test_records_call_sid(self, db, token_store):
        token = await token_store.mint(db)

        await token_store.attach_call_sid(db, token, "CAabc")

        record = await token_store.lookup(db, token)
        await db.refresh(record)
        assert record.call_sid == "CAabc"


class TestSweepExpired:
    """Tests for WebhookTokenStore.sweep_expired."""

    @pytest.mark.asyncio
    async def test_sweeps_only_expired_tokens(self, db, clock):
        store = WebhookTokenStore(clock=clock, ttl=timedelta(hours=1))
        first = await store.mint(db)
        clock.advance(minutes=30)
        second = await store.mint(db)

        # 61 minutes after the first mint: only the first has expired
        clock.advance(minutes=31)
        deleted = await store.sweep_expired(db)

        assert deleted == 1
        assert await _token_count(db) == 1
        assert await store.validate(db, first) is False
        assert await store.validate(db, second) is True

    @pytest.mark.asyncio
    async def test_expired_expiring_and_fresh_tokens(self, db, token_store, clock):
        expired = await token_store.mint(db, ttl=timedelta(minutes=-10))
        expiring = await token_store.mint(db, ttl=timedelta(minutes=10))
        fresh = await token_store.mint(db)

        assert await token_store.sweep_expired(db) == 1
        assert await token_store.validate(db, expired) is False
        assert await token_store.validate(db, expiring) is True
        assert await token_store.validate(db, fresh) is True

        clock.advance(minutes=10)
        assert await token_store.sweep_expired(db) == 1
        assert await token_store.validate(db, expiring) is False
        assert await token_store.validate(db, fresh) is True
        assert await _token_count(db) == 1

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, db, token_store, clock):
        await token_store.mint(db)
        await token_store.mint(db)
        clock.advance(hours=2)

        assert await token_store.sweep_expired(db) == 2
        assert await token_store.sweep_expired(db) == 0
        assert await _token_count(db) == 0

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(self, db, token_store):
        await token_store.mint(db)

        assert await token_store.sweep_expired(db) == 0
        assert await _token_count(db) == 1
