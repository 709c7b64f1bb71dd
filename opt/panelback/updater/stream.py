"""
Server-sent event delivery for long-running updater operations.

The operation runs in its own task and feeds a queue; the request handler
drains the queue into a text/event-stream response. If the client goes away
the operation keeps running to completion and its remaining events are
dropped. The operation lock is released when the operation ends, not when
the client disconnects.
"""

import json
import asyncio
import logging
from typing import AsyncIterator, Dict, Optional, Set

from aiohttp import web

from .state import OperationLock, UpdateStatus

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    'Content-Type': 'text/event-stream',
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}

FINISHED_EVENT = {'status': 'finished'}

# Strong references to running operations
_running: Set[asyncio.Task] = set()


def encode_event(event: Dict) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode('utf-8')


class ProgressStream:
    """Couples one operation's event generator to at most one SSE client."""

    def __init__(self, events: AsyncIterator[Dict], lock: OperationLock, send_finished: bool = False):
        self._events = events
        self._lock = lock
        self._send_finished = send_finished
        self._queue: asyncio.Queue = asyncio.Queue()
        self.detached = False
        self.task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self._pump())
        _running.add(self.task)
        self.task.add_done_callback(_running.discard)
        return self.task

    def _emit(self, event: Optional[Dict]):
        if not self.detached:
            self._queue.put_nowait(event)

    async def _pump(self):
        try:
            async for event in self._events:
                if 'status' in event:
                    self._lock.set_status(UpdateStatus(event['status']), event.get('message'))
                self._emit(event)
        except Exception as e:
            logger.exception(f"Operation '{self._lock.operation}' crashed")
            event = {'status': UpdateStatus.ERROR.value, 'message': f"Unexpected error: {e}"}
            self._lock.set_status(UpdateStatus.ERROR, event['message'])
            self._emit(event)
        finally:
            self._lock.release()
            if self._send_finished:
                self._emit(dict(FINISHED_EVENT))
            self._emit(None)

    async def respond(self, request: web.Request) -> web.StreamResponse:
        """Write queued events to the client until the operation ends."""
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                await response.write(encode_event(event))
        except ConnectionResetError:
            logger.info("Progress stream client disconnected; operation continues in background")
            return response
        finally:
            self.detached = True

        await response.write_eof()
        return response


async def run_streamed(
    request: web.Request,
    operation: str,
    status: UpdateStatus,
    events: AsyncIterator[Dict],
    send_finished: bool = False,
) -> web.StreamResponse:
    """
    Claim the operation lock, start the operation and stream its events.

    Raises:
        OperationInProgressError: Before any response is started, if another
            operation holds the lock
    """
    lock: OperationLock = request.app['operation_lock']
    lock.acquire(operation, status)

    stream = ProgressStream(events, lock, send_finished=send_finished)
    stream.start()
    return await stream.respond(request)
