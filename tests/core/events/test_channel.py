"""
事件输出通道测试
"""

from core.events import CallbackEventSink, GenerationEvent, NullEventSink, QueueEventSink


def _event(event_type="content_updated") -> GenerationEvent:
    return GenerationEvent(type=event_type, conversation_id="c1", message_id="m1", data={"n": 1})


class TestSinks:
    async def test_null_sink_discards(self):
        assert await NullEventSink().emit(_event()) is None

    async def test_callback_sync_and_async(self):
        received = []

        async def async_callback(event):
            received.append(("async", event.type))

        await CallbackEventSink(lambda e: received.append(("sync", e.type))).emit(_event())
        await CallbackEventSink(async_callback).emit(_event("generation_end"))

        assert received == [("sync", "content_updated"), ("async", "generation_end")]

    async def test_callback_errors_are_swallowed(self):
        def broken(event):
            raise RuntimeError("ui closed")

        await CallbackEventSink(broken).emit(_event())

    async def test_queue_sink_preserves_order(self):
        sink = QueueEventSink()
        await sink.emit(_event("generation_start"))
        await sink.emit(_event("generation_end"))

        assert (await sink.get()).type == "generation_start"
        assert (await sink.get(timeout=1)).type == "generation_end"
