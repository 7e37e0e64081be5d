"""One bidirectional Run exchange with the pipeline service.

A session covers exactly one repeat iteration::

    IDLE --negotiate()--> AWAITING_HANDLE --> HANDLE_READY | HANDSHAKE_FAILED
      |                                              |
      +------------------run()-----------------------+--> RUNNING
    RUNNING --replies()--> READING --close()--> CLOSING --> TERMINAL

``abort()`` moves any state straight to TERMINAL and cancels the call.
"""
import enum
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import grpc

from .log import get_logger
from .messages import LOAD_PIPELINE, RUN, HandshakeResult, ReplyContent, Request, Response, decode_content, decode_handshake

logger = get_logger("session")


class SessionState(enum.Enum):
    IDLE = "idle"
    AWAITING_HANDLE = "awaiting_handle"
    HANDLE_READY = "handle_ready"
    HANDSHAKE_FAILED = "handshake_failed"
    RUNNING = "running"
    READING = "reading"
    CLOSING = "closing"
    TERMINAL = "terminal"


class SessionStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class Reply:
    response: Response
    content: ReplyContent
    received_at: float


class PipelineSession:
    def __init__(
        self,
        call,
        pipeline_config: str,
        stream_num: int,
        media_uris: List[str],
        job_handle: int = 0,
        thread_id: int = 0,
    ) -> None:
        self._call = call
        self.pipeline_config = pipeline_config
        self.stream_num = stream_num
        self.media_uris = media_uris
        self.job_handle = job_handle
        self.thread_id = thread_id

        self.state = SessionState.IDLE
        self.sent: List[Request] = []
        self.handshake_status: Optional[int] = None
        self.request_sent_at: Optional[float] = None
        self.first_response_at: Optional[float] = None
        self.finish_code: Optional[grpc.StatusCode] = None

    def _expect(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionStateError(f"session is {self.state.value}, expected one of {[s.value for s in states]}")

    async def _send(self, request: Request) -> None:
        self.sent.append(request)
        await self._call.write(request)

    async def negotiate(self) -> int:
        """Send load_pipeline and read its answer; returns the handle or 0."""
        self._expect(SessionState.IDLE)
        self.state = SessionState.AWAITING_HANDLE
        logger.info("session.handshake", extra={"event": "session.handshake", "thread_id": self.thread_id})
        await self._send(
            Request(
                target=LOAD_PIPELINE,
                pipeline_config=self.pipeline_config,
                suggested_weight=0,
                stream_num=self.stream_num,
            )
        )

        reply = await self._call.read()
        if reply is grpc.aio.EOF:
            logger.warning(
                "session.handshake_failed",
                extra={"event": "session.handshake_failed", "thread_id": self.thread_id, "reason": "stream closed"},
            )
            self.state = SessionState.HANDSHAKE_FAILED
            return 0

        self.handshake_status = reply.status
        content = decode_handshake(reply.message) if reply.ok else None
        if isinstance(content, HandshakeResult):
            self.job_handle = content.handle
            self.state = SessionState.HANDLE_READY
            logger.info(
                f"pipeline has been loaded, job handle: {self.job_handle}",
                extra={"event": "session.handle_ready", "thread_id": self.thread_id, "job_handle": self.job_handle},
            )
            return self.job_handle

        logger.warning(
            "session.handshake_failed",
            extra={
                "event": "session.handshake_failed",
                "thread_id": self.thread_id,
                "status": reply.status,
                "reply": reply.message,
            },
        )
        self.state = SessionState.HANDSHAKE_FAILED
        return 0

    async def run(self) -> Request:
        self._expect(SessionState.IDLE, SessionState.HANDLE_READY, SessionState.HANDSHAKE_FAILED)
        self.state = SessionState.RUNNING
        request = Request(target=RUN, suggested_weight=0, stream_num=self.stream_num, media_uris=list(self.media_uris))
        if self.job_handle > 0:
            request.job_handle = self.job_handle
        else:
            request.pipeline_config = self.pipeline_config
        logger.info(
            "session.run",
            extra={
                "event": "session.run",
                "thread_id": self.thread_id,
                "job_handle": request.job_handle,
                "media": len(request.media_uris),
            },
        )
        self.request_sent_at = time.perf_counter()
        await self._send(request)
        return request

    async def replies(self) -> AsyncIterator[Reply]:
        """Yield replies in delivery order until the service closes the stream."""
        self._expect(SessionState.RUNNING)
        self.state = SessionState.READING
        while True:
            response = await self._call.read()
            if response is grpc.aio.EOF:
                break
            now = time.perf_counter()
            if self.first_response_at is None:
                self.first_response_at = now
            yield Reply(response=response, content=decode_content(response.message), received_at=now)

    async def close(self) -> grpc.StatusCode:
        self._expect(SessionState.READING, SessionState.RUNNING)
        self.state = SessionState.CLOSING
        await self._call.done_writing()
        code = await self._call.code()
        self.finish_code = code
        if code != grpc.StatusCode.OK:
            details = await self._call.details()
            logger.warning(
                "session.finish",
                extra={"event": "session.finish", "thread_id": self.thread_id, "code": str(code), "details": details},
            )
        self.state = SessionState.TERMINAL
        return code

    def abort(self) -> None:
        if self.state is not SessionState.TERMINAL:
            self._call.cancel()
            self.state = SessionState.TERMINAL

    def elapsed_ms(self, until: Optional[float] = None) -> float:
        """Milliseconds from the first reply of this repeat; 0 when nothing arrived."""
        if self.first_response_at is None:
            return 0.0
        end = time.perf_counter() if until is None else until
        return (end - self.first_response_at) * 1000.0
