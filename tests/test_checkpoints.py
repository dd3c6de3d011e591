"""Tests for the checkpoint writer."""

import pytest

from chargur.engine.checkpoints import CheckpointWriter
from chargur.store.models import CheckpointToken, TokenKind


class TestCheckpointWriter:
    """Tests for CheckpointWriter."""

    @pytest.mark.asyncio
    async def test_numbers_after_existing_tokens(self, store):
        store.tokens[("conv-1", 4)] = CheckpointToken("conv-1", 4, "earlier exchange")
        writer = await CheckpointWriter.open(store, "conv-1")

        assert writer.base_index == 4
        writer.add("He")
        writer.add("Hello")
        await writer.flush()

        assert [t.index for t in store.content_tokens("conv-1")] == [4, 5, 6]
        assert writer.written == 2
        assert writer.pending == 0

    @pytest.mark.asyncio
    async def test_batch_full(self, store):
        writer = await CheckpointWriter.open(store, "conv-1", batch_size=2)
        assert writer.add("a") is False
        assert writer.add("ab") is True

    @pytest.mark.asyncio
    async def test_unknown_base_disables(self, store):
        store.fail_operations.add("get_last_token_index")
        writer = await CheckpointWriter.open(store, "conv-1")

        assert not writer.enabled
        assert writer.base_index is None
        assert writer.add("x") is False
        await writer.flush()
        assert store.tokens == {}

    @pytest.mark.asyncio
    async def test_write_failure_disables(self, store):
        writer = await CheckpointWriter.open(store, "conv-1")
        writer.add("x")
        store.fail_operations.add("append_tokens")

        await writer.flush()

        assert not writer.enabled
        assert writer.written == 0
        assert writer.add("xy") is False

    @pytest.mark.asyncio
    async def test_skip_to(self, store):
        writer = await CheckpointWriter.open(store, "conv-1")
        writer.skip_to(9)
        writer.skip_to(3)
        writer.add("resumed", TokenKind.CONTENT)
        await writer.flush()
        assert list(store.tokens) == [("conv-1", 10)]
