"""Tests for the frame slot and the background publisher."""

from __future__ import annotations

import asyncio

from live_assist.config import StreamSettings
from live_assist.streaming import FramePublisher, FrameSlot

from .conftest import FakeCapturer


async def wait_for_frame(slot: FrameSlot, minimum_id: int = 1, attempts: int = 40):
    for _ in range(attempts):
        frame = slot.latest()
        if frame is not None and frame.frame_id >= minimum_id:
            return frame
        await asyncio.sleep(0.05)
    return slot.latest()


class TestFrameSlot:
    def test_ids_increase(self):
        slot = FrameSlot()
        assert slot.latest() is None

        ids = [slot.store(b"frame").frame_id for _ in range(3)]

        assert ids == [1, 2, 3]
        assert slot.latest().frame_id == 3

    def test_latest_replaces_previous(self):
        slot = FrameSlot()
        slot.store(b"old")
        slot.store(b"new")
        assert slot.latest().data == b"new"


class TestFramePublisher:
    """Capture loop gated on connected clients."""

    def test_settings_are_clamped(self):
        publisher = FramePublisher(
            FakeCapturer(), FrameSlot(), StreamSettings(fps=100, jpeg_quality=10, max_width=50), lambda: 0
        )
        assert publisher.fps == 30
        assert publisher.quality == 40
        assert publisher.max_width == 320

    async def test_idle_without_clients(self):
        capturer = FakeCapturer()
        slot = FrameSlot()
        publisher = FramePublisher(capturer, slot, StreamSettings(fps=30), lambda: 0)

        publisher.start()
        await asyncio.sleep(0.1)
        await publisher.stop()

        assert capturer.jpeg_calls == 0
        assert slot.latest() is None
        assert not publisher.running

    async def test_publishes_frames_for_clients(self):
        capturer = FakeCapturer()
        slot = FrameSlot()
        publisher = FramePublisher(capturer, slot, StreamSettings(fps=30), lambda: 1)

        publisher.start()
        frame = await wait_for_frame(slot, minimum_id=2)
        await publisher.stop()

        assert frame is not None and frame.frame_id >= 2
        assert frame.data.startswith(b"\xff\xd8")

    async def test_capture_failure_backs_off_and_continues(self):
        capturer = FakeCapturer()
        capturer.failures = 1
        slot = FrameSlot()
        publisher = FramePublisher(capturer, slot, StreamSettings(fps=30), lambda: 1)

        publisher.start()
        frame = await wait_for_frame(slot)
        await publisher.stop()

        assert frame is not None
        assert capturer.jpeg_calls >= 2

    async def test_disabled_never_starts(self):
        publisher = FramePublisher(FakeCapturer(), FrameSlot(), StreamSettings(enabled=False), lambda: 1)

        publisher.start()

        assert not publisher.running
        await publisher.stop()


class TestStreamingDuringOperations:
    async def test_frames_keep_flowing_while_an_answer_is_pending(self, make_orchestrator, llm, capturer):
        llm.gate = asyncio.Event()
        orchestrator = make_orchestrator()
        slot = orchestrator.state.frames
        publisher = FramePublisher(capturer, slot, StreamSettings(fps=30), lambda: 1)

        pending = asyncio.create_task(orchestrator.follow_up("c1", "what next?"))
        for _ in range(100):
            if llm.calls:
                break
            await asyncio.sleep(0.01)
        publisher.start()
        first = await wait_for_frame(slot)
        later = await wait_for_frame(slot, minimum_id=first.frame_id + 2)
        still_waiting = not pending.done()

        llm.gate.set()
        await pending
        await publisher.stop()

        assert llm.calls and llm.calls[0][0] == "follow_up"
        assert still_waiting
        assert later.frame_id >= first.frame_id + 2
