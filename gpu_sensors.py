"""GPU telemetry sampling via nvidia-smi.

The sampler implements sample() -> TelemetrySample and raises
SensorUnavailable when nvidia-smi cannot produce a usable record.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import subprocess
from typing import Protocol

log = logging.getLogger("gpu-fan-daemon")

QUERY_FIELDS = (
    "temperature.gpu",
    "fan.speed",
    "power.draw",
    "memory.used",
    "memory.total",
)


class SensorUnavailable(Exception):
    """GPU telemetry could not be read or parsed. Retry next cycle."""


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class TelemetrySample:
    """One nvidia-smi reading."""

    temperature_c: int
    fan_speed_percent: int
    power_draw_w: float
    mem_used_mb: int
    mem_total_mb: int

    @property
    def power_draw_int(self) -> int:
        """Power draw truncated to whole watts, used for zone comparisons."""
        return int(self.power_draw_w)


class TelemetrySampler(Protocol):
    """Protocol for GPU telemetry sources."""

    def sample(self) -> TelemetrySample:
        """Read one sample. Raises SensorUnavailable."""
        ...


class Nvidiasmi:
    """NVIDIA GPU telemetry via nvidia-smi."""

    gpu_index: int | None
    timeout: float

    def __init__(self, gpu_index: int | None = None, timeout: float = 5.0) -> None:
        self.gpu_index = gpu_index
        self.timeout = timeout

    def command(self) -> list[str]:
        cmd = [
            "nvidia-smi",
            "--query-gpu=" + ",".join(QUERY_FIELDS),
            "--format=csv,noheader,nounits",
        ]
        if self.gpu_index is not None:
            cmd.extend(["-i", str(self.gpu_index)])
        return cmd

    def sample(self) -> TelemetrySample:
        """Read temperature, fan, power and memory in one nvidia-smi call."""
        out = run_cmd(self.command(), self.timeout)
        if out is None:
            raise SensorUnavailable("nvidia-smi failed or timed out")
        return parse_sample(out)


def parse_sample(output: str) -> TelemetrySample:
    """Parse 'temp, fan, power, mem_used, mem_total' (first GPU only)."""
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise SensorUnavailable("Failed to get GPU data from nvidia-smi")
    record = lines[0]
    fields = [f.strip() for f in record.split(",")]
    if len(fields) != len(QUERY_FIELDS):
        raise SensorUnavailable(
            "Expected %d fields from nvidia-smi, got %d: %r"
            % (len(QUERY_FIELDS), len(fields), record)
        )
    try:
        temp = int(fields[0])
        fan = int(fields[1])
        power = float(fields[2])
        mem_used = int(fields[3])
        mem_total = int(fields[4])
    except ValueError as e:
        raise SensorUnavailable("Unparseable nvidia-smi output: %r" % record) from e
    if not math.isfinite(power):
        raise SensorUnavailable("GPU power draw is not finite: %r" % fields[2])
    return TelemetrySample(
        temperature_c=temp,
        fan_speed_percent=fan,
        power_draw_w=power,
        mem_used_mb=mem_used,
        mem_total_mb=mem_total,
    )


def run_cmd(cmd: list[str], timeout: float = 5.0) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure."""
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        log.warning("%s timed out after %.1fs", cmd[0], timeout)
        return None
    except OSError as e:
        log.warning("Failed to run %s: %s", cmd[0], e)
        return None
    return r.stdout if r.returncode == 0 else None

