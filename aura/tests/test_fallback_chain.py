"""Tests for the provider fallback chain."""

import pytest
from unittest.mock import MagicMock

from aura.errors import EmptyTranscriptionError, TransientProviderError
from aura.providers.chain import ChainExhaustedError, FallbackChain, RejectedResult, Tier


def returning(value):
    async def call(*args, **kwargs):
        return value
    return call


def failing(error):
    async def call(*args, **kwargs):
        raise error
    return call


class TestFallbackChain:
    """Ordered tier execution."""

    @pytest.mark.asyncio
    async def test_first_tier_serves(self):
        chain = FallbackChain("test", [Tier("a", returning("A")), Tier("b", returning("B"))])
        result = await chain.run()

        assert result.value == "A"
        assert result.tier == "a"
        assert result.failures == []
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_falls_through_in_order(self):
        calls = []

        def tracked(name, call):
            async def wrapper(*args, **kwargs):
                calls.append(name)
                return await call(*args, **kwargs)
            return wrapper

        chain = FallbackChain("test", [
            Tier("a", tracked("a", failing(TransientProviderError("a", "down")))),
            Tier("b", tracked("b", failing(RuntimeError("boom")))),
            Tier("c", tracked("c", returning("C"))),
        ])
        result = await chain.run()

        assert calls == ["a", "b", "c"]
        assert result.value == "C"
        assert result.tier == "c"
        assert [f.tier for f in result.failures] == ["a", "b"]
        assert result.degraded

    @pytest.mark.asyncio
    async def test_arguments_reach_every_tier(self):
        seen = []

        async def record(text, voice_id=None):
            seen.append((text, voice_id))
            raise TransientProviderError("x", "no")

        chain = FallbackChain("test", [Tier("a", record), Tier("b", record), Tier("c", returning(1))])
        await chain.run("hello", voice_id="v1")

        assert seen == [("hello", "v1"), ("hello", "v1")]

    @pytest.mark.asyncio
    async def test_rejected_value_falls_through(self):
        chain = FallbackChain("test", [
            Tier("a", returning(""), accept=bool),
            Tier("b", returning("ok")),
        ])
        result = await chain.run()

        assert result.tier == "b"
        assert isinstance(result.failures[0].error, RejectedResult)

    @pytest.mark.asyncio
    async def test_stop_on_propagates_immediately(self):
        later = MagicMock()

        async def never(*args):
            later()
            return "unused"

        chain = FallbackChain(
            "test",
            [Tier("a", failing(EmptyTranscriptionError("silence"))), Tier("b", never)],
            stop_on=(EmptyTranscriptionError,),
        )
        with pytest.raises(EmptyTranscriptionError):
            await chain.run()
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted_chain_raises(self):
        chain = FallbackChain("test", [Tier("a", failing(RuntimeError("x")))])
        with pytest.raises(ChainExhaustedError) as exc_info:
            await chain.run()
        assert exc_info.value.chain == "test"
        assert len(exc_info.value.failures) == 1

    @pytest.mark.asyncio
    async def test_metrics_record_fallbacks_and_served_tier(self):
        metrics = MagicMock()
        chain = FallbackChain("synthesis", [
            Tier("cloned", failing(TransientProviderError("zyphra", "HTTP 500"))),
            Tier("narration", returning(b"audio")),
        ], metrics=metrics)
        await chain.run()

        metrics.record_fallback.assert_called_once()
        assert metrics.record_fallback.call_args[0][:2] == ("synthesis", "cloned")
        metrics.record_served.assert_called_once_with("synthesis", "narration")

    def test_requires_tiers(self):
        with pytest.raises(ValueError):
            FallbackChain("empty", [])

    def test_tier_names(self):
        chain = FallbackChain("test", [Tier("a", returning(1)), Tier("b", returning(2))])
        assert chain.tier_names == ["a", "b"]
