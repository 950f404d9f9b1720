"""Unit tests for the buffered relay and the stream fan-out."""

import io
import threading

from pipeline_manifold.supervisor.relay import BufferedRelay, StreamFanout


class RecordingSink:
    """A writable sink that keeps what it received and whether it was closed."""

    def __init__(self):
        self.data = b""
        self.closed = False
        self.flushes = 0

    def write(self, data):
        if self.closed:
            raise ValueError("write to closed sink")
        self.data += data
        return len(data)

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closed = True


class BrokenSink(RecordingSink):
    def write(self, data):
        raise BrokenPipeError("reader went away")


class TestBufferedRelay:
    def test_starts_paused_and_buffers(self):
        relay = BufferedRelay()
        sink = RecordingSink()

        relay.write(b"early ")
        relay.pipe(sink)
        relay.write(b"bytes")

        assert relay.paused is True
        assert sink.data == b""
        assert relay.buffered_bytes == len(b"early bytes")

    def test_resume_flushes_buffer_in_order(self):
        relay = BufferedRelay()
        first, second = RecordingSink(), RecordingSink()

        relay.pipe(first)
        relay.write(b"line 1\n")
        relay.pipe(second)
        relay.write(b"line 2\n")
        relay.resume()

        assert first.data == b"line 1\nline 2\n"
        assert second.data == b"line 1\nline 2\n"
        assert relay.buffered_bytes == 0

    def test_pass_through_after_resume(self):
        relay = BufferedRelay()
        sink = RecordingSink()
        relay.pipe(sink)
        relay.resume()

        relay.write(b"abc")

        assert sink.data == b"abc"
        assert relay.paused is False

    def test_consumer_attached_after_resume_only_sees_new_data(self):
        relay = BufferedRelay()
        early, late = RecordingSink(), RecordingSink()
        relay.pipe(early)
        relay.write(b"before")
        relay.resume()

        relay.pipe(late)
        relay.write(b"after")

        assert early.data == b"beforeafter"
        assert late.data == b"after"

    def test_resume_twice_is_harmless(self):
        relay = BufferedRelay()
        sink = RecordingSink()
        relay.pipe(sink)
        relay.write(b"x")
        relay.resume()
        relay.resume()

        assert sink.data == b"x"

    def test_end_flushes_buffer_and_closes_closable_sinks(self):
        relay = BufferedRelay()
        child, program_output = RecordingSink(), RecordingSink()
        relay.pipe(child)
        relay.pipe(program_output, end=False)
        relay.write(b"pending")

        relay.end()

        assert child.data == b"pending"
        assert child.closed is True
        assert program_output.data == b"pending"
        assert program_output.closed is False
        assert program_output.flushes >= 1
        assert relay.ended is True

    def test_writes_after_end_are_discarded(self):
        relay = BufferedRelay()
        sink = RecordingSink()
        relay.pipe(sink, end=False)
        relay.resume()
        relay.end()

        relay.write(b"too late")

        assert sink.data == b""

    def test_pipe_after_end_closes_sink(self):
        relay = BufferedRelay()
        relay.end()
        sink = RecordingSink()

        relay.pipe(sink)

        assert sink.closed is True
        assert relay.sinks == []

    def test_broken_sink_is_dropped(self):
        relay = BufferedRelay()
        broken, healthy = BrokenSink(), RecordingSink()
        relay.pipe(broken)
        relay.pipe(healthy)
        relay.resume()

        relay.write(b"one")
        relay.write(b"two")

        assert healthy.data == b"onetwo"
        assert broken not in relay.sinks
        assert healthy in relay.sinks

    def test_pipe_is_idempotent(self):
        relay = BufferedRelay()
        sink = RecordingSink()
        relay.pipe(sink)
        relay.pipe(sink)
        relay.resume()

        relay.write(b"once")

        assert sink.data == b"once"

    def test_unpipe_stops_delivery(self):
        relay = BufferedRelay()
        sink = RecordingSink()
        relay.pipe(sink)
        relay.resume()
        relay.write(b"a")

        relay.unpipe(sink)
        relay.write(b"b")

        assert sink.data == b"a"

    def test_attach_source_pumps_until_eof(self):
        relay = BufferedRelay(chunk_size=4)
        sink = RecordingSink()
        relay.pipe(sink)
        finished = threading.Event()

        relay.attach_source(io.BytesIO(b"hello pipeline world"), on_eof=finished.set)

        assert finished.wait(5)
        assert sink.data == b""
        relay.resume()
        assert sink.data == b"hello pipeline world"
        assert relay.wait_for_source(1) is True


class TestStreamFanout:
    def test_is_not_paused(self):
        fanout = StreamFanout("stage")
        sink = RecordingSink()
        fanout.pipe(sink)

        fanout.write(b"direct")

        assert sink.data == b"direct"

    def test_copies_to_every_sink(self):
        fanout = StreamFanout("stage", chunk_size=2)
        sinks = [RecordingSink() for _ in range(3)]
        for sink in sinks:
            fanout.pipe(sink)
        finished = threading.Event()

        fanout.attach_source(io.BytesIO(b"fan-out"), on_eof=finished.set)

        assert finished.wait(5)
        assert [sink.data for sink in sinks] == [b"fan-out"] * 3

    def test_wait_for_source_without_source(self):
        assert StreamFanout("idle").wait_for_source(0) is True
