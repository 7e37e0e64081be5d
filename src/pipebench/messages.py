"""Request/response model of the pipeline service and reply decoding.

Reply ``message`` text is decoded once, at the boundary, into one of:

* ``PerformanceSummary`` - service-side aggregate metrics (``"Type": "PerformanceData"``)
* ``FrameResult``        - a per-frame result carrying ``latency``
* ``HandshakeResult``    - a ``load_pipeline`` answer carrying ``handle``
* ``Unrecognized``       - anything else, including text that is not a JSON object

Missing or malformed fields never raise; they fall through to ``Unrecognized``.
"""
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

LOAD_PIPELINE = "load_pipeline"
RUN = "run"
TARGETS = (LOAD_PIPELINE, RUN)

PERFORMANCE_DATA_TYPE = "PerformanceData"


@dataclass
class Request:
    target: str
    pipeline_config: Optional[str] = None
    suggested_weight: int = 0
    stream_num: int = 1
    job_handle: int = 0
    media_uris: List[str] = field(default_factory=list)


@dataclass
class StreamResponse:
    binary: Optional[bytes] = None
    json_messages: str = ""


@dataclass
class Response:
    status: int = 0
    message: str = ""
    responses: Dict[str, StreamResponse] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass(frozen=True)
class PerformanceSummary:
    payload: Dict[str, Any]


@dataclass(frozen=True)
class FrameResult:
    latency: float
    payload: Dict[str, Any]


@dataclass(frozen=True)
class HandshakeResult:
    handle: int
    payload: Dict[str, Any]


@dataclass(frozen=True)
class Unrecognized:
    raw: str
    payload: Optional[Dict[str, Any]] = None


ReplyContent = Union[PerformanceSummary, FrameResult, HandshakeResult, Unrecognized]


@dataclass(frozen=True)
class FrameArtifact:
    frame_id: str
    size: int
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # json.loads accepts NaN and Infinity
    return number if math.isfinite(number) else None


def _as_handle(value: Any) -> Optional[int]:
    # the service sends handles as decimal strings, e.g. "2147483648"
    if isinstance(value, bool):
        return None
    try:
        handle = int(value)
    except (TypeError, ValueError):
        return None
    return handle if handle > 0 else None


def decode_content(message: str) -> ReplyContent:
    try:
        payload = json.loads(message)
    except (TypeError, ValueError):
        return Unrecognized(raw=message or "")
    if not isinstance(payload, dict):
        return Unrecognized(raw=message)

    if payload.get("Type") == PERFORMANCE_DATA_TYPE:
        return PerformanceSummary(payload=payload)
    latency = _as_float(payload.get("latency"))
    if latency is not None:
        return FrameResult(latency=latency, payload=payload)
    handle = _as_handle(payload.get("handle"))
    if handle is not None:
        return HandshakeResult(handle=handle, payload=payload)
    return Unrecognized(raw=message, payload=payload)


def decode_handshake(message: str) -> ReplyContent:
    """Decode a ``load_pipeline`` answer; a handle wins over any other field."""
    content = decode_content(message)
    payload = getattr(content, "payload", None)
    if isinstance(content, HandshakeResult) or not isinstance(payload, dict):
        return content
    handle = _as_handle(payload.get("handle"))
    if handle is not None:
        return HandshakeResult(handle=handle, payload=payload)
    return content


def describe_artifacts(response: Response) -> List[FrameArtifact]:
    """Summarize the binary frame artifacts attached to a reply."""
    artifacts = []
    for frame_id, sub in response.responses.items():
        if sub.binary is None:
            continue
        meta: Dict[str, Any] = {}
        try:
            decoded = json.loads(sub.json_messages) if sub.json_messages else {}
            if isinstance(decoded, dict):
                meta = decoded
        except ValueError:
            pass
        width = _as_float(meta.get("width"))
        height = _as_float(meta.get("height"))
        artifacts.append(
            FrameArtifact(
                frame_id=frame_id,
                size=len(sub.binary),
                format=meta.get("format"),
                width=int(width) if width is not None else None,
                height=int(height) if height is not None else None,
            )
        )
    return artifacts
