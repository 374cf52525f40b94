"""
Tests for the session registry.
"""

import asyncio

import pytest

from src.telecaller.registry import SessionRegistry


class StubSession:
    def __init__(self, call_sid, stream_sid=""):
        self.call_sid = call_sid
        self.stream_sid = stream_sid
        self.closed_with = None

    async def close(self, reason="stop"):
        self.closed_with = reason


class TestLookup:
    def test_register_and_lookup(self):
        registry = SessionRegistry()
        session = StubSession("CA1", "MZ1")

        registry.register(session)

        assert len(registry) == 1
        assert "CA1" in registry
        assert registry.get("CA1") is session
        assert registry.get_by_stream("MZ1") is session
        assert registry.get_by_stream("MZ2") is None
        assert registry.call_sids() == ["CA1"]
        assert registry.created_total == 1

    def test_duplicate_call_rejected(self):
        registry = SessionRegistry()
        registry.register(StubSession("CA1"))

        with pytest.raises(ValueError):
            registry.register(StubSession("CA1"))

    def test_bind_stream_replaces_old_index(self):
        registry = SessionRegistry()
        session = StubSession("CA1", "MZ1")
        registry.register(session)

        registry.bind_stream("CA1", "MZ2")

        assert session.stream_sid == "MZ2"
        assert registry.get_by_stream("MZ2") is session
        assert registry.get_by_stream("MZ1") is None

    def test_bind_unknown_call(self):
        with pytest.raises(KeyError):
            SessionRegistry().bind_stream("CA404", "MZ1")

    def test_registries_are_independent(self):
        first, second = SessionRegistry(), SessionRegistry()
        first.register(StubSession("CA1"))

        assert "CA1" not in second


class TestTeardown:
    @pytest.mark.asyncio
    async def test_remove_unindexes_then_closes(self):
        registry = SessionRegistry()
        session = StubSession("CA1", "MZ1")
        registry.register(session)

        assert await registry.remove("CA1", reason="stop") is True

        assert session.closed_with == "stop"
        assert registry.get("CA1") is None
        assert registry.get_by_stream("MZ1") is None
        assert await registry.remove("CA1") is False

    @pytest.mark.asyncio
    async def test_scheduled_teardown_after_grace(self):
        registry = SessionRegistry(grace_seconds=0.02)
        session = StubSession("CA1")
        registry.register(session)

        registry.schedule_teardown("CA1")
        assert "CA1" in registry
        await asyncio.sleep(0.08)

        assert "CA1" not in registry
        assert session.closed_with == "terminal"

    @pytest.mark.asyncio
    async def test_explicit_remove_cancels_scheduled_teardown(self):
        registry = SessionRegistry(grace_seconds=0.05)
        session = StubSession("CA1")
        registry.register(session)
        registry.schedule_teardown("CA1")

        await registry.remove("CA1", reason="stop")
        await asyncio.sleep(0.1)

        assert session.closed_with == "stop"

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = SessionRegistry()
        sessions = [StubSession(f"CA{i}") for i in range(3)]
        for session in sessions:
            registry.register(session)

        await registry.close_all()

        assert len(registry) == 0
        assert all(s.closed_with == "shutdown" for s in sessions)
