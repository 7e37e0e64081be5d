import os
import asyncio

from pipebench.log import configure_logging
from pipebench.mock_service import MockPipelineService, MockScript, start_server

HOST = os.getenv("MOCK_HOST", "127.0.0.1")
PORT = int(os.getenv("MOCK_PORT", "50052"))
HANDLE = int(os.getenv("MOCK_HANDLE", "42"))
FRAMES = int(os.getenv("MOCK_FRAMES", "300"))
LATENCY_MS = float(os.getenv("MOCK_LATENCY_MS", "25"))
SUMMARY = os.getenv("MOCK_SUMMARY", "1") == "1"


async def main():
    configure_logging(os.getenv("PIPEBENCH_LOG_LEVEL", "INFO"))
    script = MockScript(
        handle=HANDLE,
        latencies=[LATENCY_MS] * FRAMES,
        performance_summary=SUMMARY,
    )
    server, port = await start_server(MockPipelineService(script), HOST, PORT)
    print(f"Mock pipeline service on {HOST}:{port}, {FRAMES} frames per run")
    try:
        await server.wait_for_termination()
    finally:
        await server.stop(grace=1)

if __name__ == "__main__":
    asyncio.run(main())
