import abc
import json
import shutil
import subprocess
import threading
from typing import List, Optional

import psutil

from .errors import SamplerInitError
from .log import get_logger

logger = get_logger("sampler")


class ResourceSampler(abc.ABC):
    """Polling source of one utilization percentage."""

    def start(self) -> None:
        pass

    @abc.abstractmethod
    def sample(self) -> float:
        ...

    def stop(self) -> None:
        pass


class NullSampler(ResourceSampler):
    def sample(self) -> float:
        return 0.0


class ProcessCpuSampler(ResourceSampler):
    """CPU share of the processes named ``process_name``, normalized by logical CPUs.

    An empty name samples system-wide utilization instead.
    """

    def __init__(self, process_name: str = "") -> None:
        self.process_name = process_name
        self.cpu_threads = psutil.cpu_count() or 1
        self._procs: List[psutil.Process] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self.process_name:
            # primes the interval-less measurement
            psutil.cpu_percent(interval=None)
            return
        procs = [p for p in psutil.process_iter(["name"]) if p.info.get("name") == self.process_name]
        if not procs:
            raise SamplerInitError(f"no running process named {self.process_name!r}")
        for p in procs:
            p.cpu_percent(interval=None)
        self._procs = procs
        logger.info(f"Sampling CPU of {len(procs)} '{self.process_name}' process(es)")

    def sample(self) -> float:
        if not self.process_name:
            return float(psutil.cpu_percent(interval=None))
        total = 0.0
        with self._lock:
            alive = []
            for p in self._procs:
                try:
                    total += p.cpu_percent(interval=None)
                    alive.append(p)
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
            self._procs = alive
        return total / self.cpu_threads


def parse_gpu_top(output: str) -> Optional[float]:
    """Mean engine busy % of the last complete sample in ``intel_gpu_top -J`` output."""
    decoder = json.JSONDecoder()
    text = output.strip().lstrip("[")
    idx = 0
    last = None
    while idx < len(text):
        while idx < len(text) and text[idx] in " \t\r\n,]":
            idx += 1
        if idx >= len(text):
            break
        try:
            obj, idx = decoder.raw_decode(text, idx)
        except ValueError:
            break
        if isinstance(obj, dict):
            last = obj
    if not last or not isinstance(last.get("engines"), dict):
        return None
    busy = [e.get("busy") for e in last["engines"].values() if isinstance(e, dict)]
    busy = [float(b) for b in busy if isinstance(b, (int, float))]
    if not busy:
        return None
    return sum(busy) / len(busy)


class GpuBusySampler(ResourceSampler):
    """Background poller of ``intel_gpu_top``; ``sample()`` returns the latest reading."""

    def __init__(self, interval_s: float = 1.0, binary: str = "intel_gpu_top") -> None:
        self.interval_s = interval_s
        self.binary = binary
        self._value = 0.0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if shutil.which(self.binary) is None:
            raise SamplerInitError(f"{self.binary} not found on PATH")
        self._thread = threading.Thread(target=self._poll, name="gpu-sampler", daemon=True)
        self._thread.start()

    def _poll(self) -> None:
        period_ms = max(int(self.interval_s * 1000) // 2, 100)
        while not self._stop.is_set():
            try:
                proc = subprocess.run(
                    ["timeout", str(self.interval_s), self.binary, "-J", "-s", str(period_ms)],
                    capture_output=True,
                    text=True,
                )
            except OSError as e:
                logger.warning(f"{self.binary} failed: {e}")
                self._stop.wait(self.interval_s)
                continue
            value = parse_gpu_top(proc.stdout)
            if value is not None:
                with self._lock:
                    self._value = value

    def sample(self) -> float:
        with self._lock:
            return self._value

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_s * 2)
            self._thread = None


def build_samplers(cpu_process_name: str, gpu_monitor: str):
    cpu = ProcessCpuSampler(cpu_process_name)
    gpu = GpuBusySampler() if gpu_monitor == "intel_gpu_top" else NullSampler()
    return cpu, gpu
