"""
Tests for server-sent event encoding.
"""
import pytest
from asgiref.sync import async_to_sync

from apps.rag.sse import EventStreamWriter


class TestEventStreamWriter:

    def test_encode(self):
        data = EventStreamWriter().encode('answer_delta', {'text': 'Hello'})

        assert data == b'event: answer_delta\ndata: {"text": "Hello"}\n\n'

    def test_non_ascii_is_kept(self):
        data = EventStreamWriter().encode('answer_delta', {'text': 'Größe – ok'})

        assert 'Größe – ok'.encode('utf-8') in data

    def test_stream_encodes_in_order(self):
        events = iter([('answer_start', {'session_id': 's'}), ('answer_end', {'message_id': 'm'})])

        chunks = list(EventStreamWriter().stream(events))

        assert chunks == [
            b'event: answer_start\ndata: {"session_id": "s"}\n\n',
            b'event: answer_end\ndata: {"message_id": "m"}\n\n',
        ]

    def test_closing_stream_closes_source(self):
        state = {'closed': False}

        def source():
            try:
                yield 'answer_start', {}
                yield 'answer_delta', {'text': 'never sent'}
            finally:
                state['closed'] = True

        stream = EventStreamWriter().stream(source())
        next(stream)
        stream.close()

        assert state['closed']


class TestAsyncEventStream:

    def test_pulls_one_event_per_frame(self):
        pulled = []

        def source():
            for i in range(5):
                pulled.append(i)
                yield 'answer_delta', {'text': str(i)}

        async def run():
            frames = EventStreamWriter().astream(source())
            first = await frames.__anext__()
            pulled_before_second = len(pulled)
            rest = [frame async for frame in frames]
            return first, pulled_before_second, rest

        first, pulled_before_second, rest = async_to_sync(run)()

        assert first == b'event: answer_delta\ndata: {"text": "0"}\n\n'
        assert pulled_before_second == 1
        assert len(rest) == 4

    def test_closing_stops_pulling_and_closes_source(self):
        state = {'pulled': 0, 'closed': False}

        def source():
            try:
                while True:
                    state['pulled'] += 1
                    yield 'answer_delta', {'text': 'more'}
            finally:
                state['closed'] = True

        async def run():
            frames = EventStreamWriter().astream(source())
            await frames.__anext__()
            await frames.aclose()

        async_to_sync(run)()

        assert state['pulled'] == 1
        assert state['closed']

    def test_source_errors_propagate(self):
        def source():
            yield 'answer_start', {}
            raise RuntimeError('boom')

        async def run():
            return [frame async for frame in EventStreamWriter().astream(source())]

        with pytest.raises(RuntimeError, match='boom'):
            async_to_sync(run)()
