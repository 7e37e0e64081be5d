import asyncio
import base64
import json
from typing import Any, Dict, List, Optional, Tuple

import grpc

from .errors import ChannelUnavailableError
from .log import get_logger
from .messages import Request, Response, StreamResponse

SERVICE_NAME = "hce_ai.ai_inference"
RUN_METHOD = "Run"
RUN_PATH = f"/{SERVICE_NAME}/{RUN_METHOD}"

logger = get_logger("transport")


# --- JSON codec ---
# Field names follow the service contract; binary payloads travel base64 encoded.

def encode_request(request: Request) -> bytes:
    body: Dict[str, Any] = {
        "target": request.target,
        "suggestedWeight": request.suggested_weight,
        "streamNum": request.stream_num,
        "jobHandle": request.job_handle,
        "mediaURIs": list(request.media_uris),
    }
    if request.pipeline_config is not None:
        body["pipelineConfig"] = request.pipeline_config
    return json.dumps(body).encode("utf-8")


def decode_request(data: bytes) -> Request:
    body = json.loads(data.decode("utf-8"))
    return Request(
        target=body.get("target", ""),
        pipeline_config=body.get("pipelineConfig"),
        suggested_weight=int(body.get("suggestedWeight", 0)),
        stream_num=int(body.get("streamNum", 1)),
        job_handle=int(body.get("jobHandle", 0)),
        media_uris=list(body.get("mediaURIs", [])),
    )


def encode_response(response: Response) -> bytes:
    subs = {}
    for frame_id, sub in response.responses.items():
        entry: Dict[str, Any] = {"jsonMessages": sub.json_messages}
        if sub.binary is not None:
            entry["binary"] = base64.b64encode(sub.binary).decode("ascii")
        subs[frame_id] = entry
    body = {"status": response.status, "message": response.message, "responses": subs}
    return json.dumps(body).encode("utf-8")


def decode_response(data: bytes) -> Response:
    body = json.loads(data.decode("utf-8"))
    subs = {}
    for frame_id, entry in (body.get("responses") or {}).items():
        binary = entry.get("binary")
        subs[str(frame_id)] = StreamResponse(
            binary=base64.b64decode(binary) if binary is not None else None,
            json_messages=entry.get("jsonMessages", ""),
        )
    return Response(status=int(body.get("status", 0)), message=body.get("message", ""), responses=subs)


def channel_options(max_message_mb: int = 64) -> List[Tuple[str, int]]:
    return [
        ("grpc.max_receive_message_length", max_message_mb * 1024 * 1024),
        ("grpc.max_send_message_length", max_message_mb * 1024 * 1024),
    ]


class PipelineClient:
    """One insecure channel to the pipeline service, owned by a single driver."""

    def __init__(self, host: str, port: int, connect_timeout_s: float = 10.0, max_message_mb: int = 64) -> None:
        self.target = f"{host}:{port}"
        self.connect_timeout_s = connect_timeout_s
        self.max_message_mb = max_message_mb
        self._channel: Optional[grpc.aio.Channel] = None
        self._run = None

    async def connect(self) -> None:
        self._channel = grpc.aio.insecure_channel(self.target, options=channel_options(self.max_message_mb))
        try:
            await asyncio.wait_for(self._channel.channel_ready(), timeout=self.connect_timeout_s)
        except asyncio.TimeoutError as e:
            await self.close()
            raise ChannelUnavailableError(
                f"channel to {self.target} not ready after {self.connect_timeout_s}s"
            ) from e
        self._run = self._channel.stream_stream(
            RUN_PATH,
            request_serializer=encode_request,
            response_deserializer=decode_response,
        )
        logger.debug(f"Connected to {self.target}")

    def open_stream(self):
        """Start one bidirectional Run call; returns a grpc.aio StreamStreamCall."""
        if self._run is None:
            raise ChannelUnavailableError(f"client for {self.target} is not connected")
        return self._run()

    async def close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
            self._run = None

    async def __aenter__(self) -> "PipelineClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
