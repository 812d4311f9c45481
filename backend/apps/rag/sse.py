"""
Server-sent event encoding.

EventStreamWriter turns (event, payload) pairs into the wire format
`event: <name>\\ndata: <json>\\n\\n` without knowing how the bytes are sent.
"""
import json
from typing import AsyncIterator, Iterable, Iterator, Tuple

from asgiref.sync import sync_to_async

Event = Tuple[str, dict]

_END = object()


class EventStreamWriter:

    def encode(self, event: str, payload: dict) -> bytes:
        data = json.dumps(payload, ensure_ascii=False)
        return f"event: {event}\ndata: {data}\n\n".encode('utf-8')

    def stream(self, events: Iterable[Event]) -> Iterator[bytes]:
        """
        Encode events lazily. Closing the returned generator closes the
        source event generator too.
        """
        try:
            for event, payload in events:
                yield self.encode(event, payload)
        finally:
            close = getattr(events, 'close', None)
            if close is not None:
                close()

    async def astream(self, events: Iterable[Event]) -> AsyncIterator[bytes]:
        """
        Encode events for an ASGI server, pulling one event at a time.

        The source is a synchronous generator (it talks to the database and
        the model), so each step runs on the request's sync thread. A frame is
        sent as soon as its event exists, and when the client goes away the
        source is closed without pulling any further events.
        """
        iterator = iter(events)
        pull = sync_to_async(next)
        try:
            while True:
                item = await pull(iterator, _END)
                if item is _END:
                    break
                event, payload = item
                yield self.encode(event, payload)
        finally:
            close = getattr(iterator, 'close', None)
            if close is not None:
                await sync_to_async(close)()
