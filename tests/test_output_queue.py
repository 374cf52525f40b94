"""
Tests for the paced audio output queue.
"""

import asyncio

import pytest

from src.telecaller.errors import TransportError
from src.telecaller.output_queue import AudioOutputQueue

FRAME = b"\x7f" * 160


class Recorder:
    def __init__(self, fail: bool = False):
        self.frames = []
        self.fail = fail

    async def __call__(self, frame: bytes) -> None:
        if self.fail:
            raise TransportError("socket closed")
        self.frames.append(frame)


@pytest.mark.asyncio
async def test_frames_are_sent_in_order_and_drained():
    sent = Recorder()
    drained = []
    queue = AudioOutputQueue(sent, pace_ms=1, on_drained=drained.append)
    queue.start()

    uid = queue.begin_utterance()
    for i in range(3):
        assert queue.push(uid, bytes([i]) * 160)
    queue.finish(uid)
    await asyncio.sleep(0.1)

    assert [f[0] for f in sent.frames] == [0, 1, 2]
    assert drained == [uid]
    assert not queue.is_speaking
    await queue.stop()


@pytest.mark.asyncio
async def test_partial_chunks_are_reframed():
    sent = Recorder()
    queue = AudioOutputQueue(sent, pace_ms=1)
    queue.start()

    uid = queue.begin_utterance()
    queue.push(uid, b"\x01" * 100)
    queue.push(uid, b"\x02" * 100)
    queue.finish(uid)
    await asyncio.sleep(0.05)

    assert len(sent.frames) == 2
    assert all(len(f) == 160 for f in sent.frames)
    await queue.stop()


@pytest.mark.asyncio
async def test_sends_at_frame_cadence():
    sent = Recorder()
    queue = AudioOutputQueue(sent, pace_ms=20)
    queue.start()

    uid = queue.begin_utterance()
    for _ in range(50):
        queue.push(uid, FRAME)
    await asyncio.sleep(0.1)

    # Roughly 5 frames in 100ms; never a burst of the whole utterance.
    assert 2 <= len(sent.frames) <= 10
    await queue.stop()


@pytest.mark.asyncio
async def test_barge_in_during_long_reply():
    """A 2000ms reply interrupted 50ms in stops within one step."""
    sent = Recorder()
    queue = AudioOutputQueue(sent, pace_ms=20)
    queue.start()

    uid = queue.begin_utterance()
    for _ in range(100):
        queue.push(uid, FRAME)
    queue.finish(uid)
    await asyncio.sleep(0.05)

    dropped = queue.interrupt()

    assert len(queue) == 0
    assert queue.is_speaking is False
    assert dropped > 80
    sent_at_interrupt = len(sent.frames)

    await asyncio.sleep(0.1)
    assert len(sent.frames) == sent_at_interrupt
    assert queue.push(uid, FRAME) is False
    await queue.stop()


@pytest.mark.asyncio
async def test_interrupt_does_not_report_drained():
    drained = []
    queue = AudioOutputQueue(Recorder(), pace_ms=20, on_drained=drained.append)
    queue.start()

    uid = queue.begin_utterance()
    queue.push(uid, FRAME * 10)
    queue.finish(uid)
    queue.interrupt()
    await asyncio.sleep(0.05)

    assert drained == []
    await queue.stop()


@pytest.mark.asyncio
async def test_new_utterance_replaces_leftovers():
    sent = Recorder()
    queue = AudioOutputQueue(sent, pace_ms=20)

    first = queue.begin_utterance()
    queue.push(first, FRAME * 5)
    second = queue.begin_utterance()

    assert len(queue) == 0
    assert queue.frames_dropped == 5
    assert queue.push(first, FRAME) is False
    assert queue.push(second, FRAME) is True


@pytest.mark.asyncio
async def test_send_failure_reports_error():
    errors = []
    queue = AudioOutputQueue(Recorder(fail=True), pace_ms=1, on_error=errors.append)
    queue.start()

    uid = queue.begin_utterance()
    queue.push(uid, FRAME)
    await asyncio.sleep(0.05)

    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert not queue.is_speaking
    await queue.stop()
