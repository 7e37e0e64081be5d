"""Scripted stand-in for the pipeline service, served over the same Run method."""
import asyncio
import json
import multiprocessing
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import grpc
from prometheus_client import CollectorRegistry, Counter

from .log import get_logger
from .messages import LOAD_PIPELINE, PERFORMANCE_DATA_TYPE, RUN, Request, Response, StreamResponse
from .transport import RUN_METHOD, SERVICE_NAME, channel_options, decode_request, encode_response

logger = get_logger("mock_service")


@dataclass
class MockScript:
    # 0 rejects the handshake with a non-zero status
    handle: int = 42
    latencies: List[float] = field(default_factory=lambda: [10.0, 20.0, 30.0])
    # per-frame status; frames past the end of the list succeed
    frame_statuses: List[int] = field(default_factory=list)
    performance_summary: bool = False
    artifact: bool = False
    # seconds to hold a run stream open before answering; None answers immediately
    stall_s: Optional[float] = None


class MockPipelineService:
    def __init__(self, script: Optional[MockScript] = None) -> None:
        self.script = script or MockScript()
        self.requests: List[Request] = []
        self.registry = CollectorRegistry()
        self.requests_total = Counter(
            "mock_requests_total", "Requests received", ["target"], registry=self.registry
        )

    def _handshake(self) -> Response:
        if self.script.handle <= 0:
            body = {"description": "Failed to load pipeline", "request": LOAD_PIPELINE}
            return Response(status=1, message=json.dumps(body))
        body = {"description": "Success", "request": LOAD_PIPELINE, "handle": str(self.script.handle)}
        return Response(status=0, message=json.dumps(body))

    def _frame(self, index: int, latency: float) -> Response:
        statuses = self.script.frame_statuses
        status = statuses[index] if index < len(statuses) else 0
        body = {"status_code": str(status), "description": "succeeded" if status == 0 else "failed",
                "latency": latency, "roi_info": []}
        subs = {}
        if self.script.artifact:
            meta = json.dumps({"format": "NV12", "height": "4", "width": "4"})
            subs[str(index)] = StreamResponse(binary=bytes(24), json_messages=meta)
        return Response(status=status, message=json.dumps(body), responses=subs)

    async def Run(self, request_iterator, context):
        async for request in request_iterator:
            self.requests.append(request)
            self.requests_total.labels(target=request.target or "unknown").inc()
            logger.debug("mock.request", extra={"event": "mock.request", "target": request.target})
            if request.target == LOAD_PIPELINE:
                yield self._handshake()
                continue
            if request.target != RUN:
                yield Response(status=2, message=json.dumps({"description": f"unknown target {request.target}"}))
                continue
            if request.job_handle == 0 and not request.pipeline_config:
                yield Response(status=3, message=json.dumps({"description": "no pipeline config or job handle"}))
                return
            if self.script.stall_s is not None:
                await asyncio.sleep(self.script.stall_s)
            for i, latency in enumerate(self.script.latencies):
                yield self._frame(i, latency)
            if self.script.performance_summary:
                summary = {"Type": PERFORMANCE_DATA_TYPE, "frames": len(self.script.latencies)}
                yield Response(status=0, message=json.dumps(summary))
            return

    def handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            SERVICE_NAME,
            {
                RUN_METHOD: grpc.stream_stream_rpc_method_handler(
                    self.Run,
                    request_deserializer=decode_request,
                    response_serializer=encode_response,
                )
            },
        )


async def start_server(service: MockPipelineService, host: str = "127.0.0.1", port: int = 0) -> Tuple[grpc.aio.Server, int]:
    server = grpc.aio.server(options=channel_options())
    server.add_generic_rpc_handlers((service.handler(),))
    bound = server.add_insecure_port(f"{host}:{port}")
    await server.start()
    logger.info(f"Mock pipeline service listening on {host}:{bound}")
    return server, bound


def _serve_forever(script: MockScript, host: str, ports) -> None:
    async def main():
        server, port = await start_server(MockPipelineService(script), host)
        ports.put(port)
        await server.wait_for_termination()

    asyncio.run(main())


@contextmanager
def serve_in_subprocess(script: Optional[MockScript] = None, host: str = "127.0.0.1") -> Iterator[int]:
    """Serve a scripted service from a spawned process; yields the bound port."""
    ctx = multiprocessing.get_context("spawn")
    ports = ctx.Queue()
    proc = ctx.Process(target=_serve_forever, args=(script or MockScript(), host, ports), daemon=True)
    proc.start()
    try:
        yield ports.get(timeout=30)
    finally:
        proc.terminate()
        proc.join(timeout=10)
