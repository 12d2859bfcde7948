#!/usr/bin/env python3
"""
Chassis fan daemon driven by GPU power draw and temperature.

Reads the GPU via nvidia-smi every few seconds and drives the motherboard's
chassis fan headers through the hwmon PWM files of the Super I/O chip
(nct6775 family). Two zone policies are available:

    power        Fan speed follows GPU power draw (default). Power rises as
                 soon as a workload starts, well before temperature does.
    temperature  Fan speed follows GPU temperature. Below the first zone the
                 GPU's own fan percentage is passed through.

Both share an emergency override: at or above --emergency-temp every channel
goes to full speed regardless of the zone table.

On SIGINT/SIGTERM every channel is returned to automatic (BIOS) control.

Run with --help for configuration options.

Monitor logs:
    journalctl -u gpu-fan-daemon -f

Dependencies:
    sudo apt install nvidia-open
    sudo modprobe nct6775
"""

from __future__ import annotations

import abc
import argparse
import dataclasses
import enum
import logging
import os
import pathlib
import signal
import threading
import time
from typing import ClassVar, Protocol, cast

from gpu_sensors import (
    Nvidiasmi,
    SensorUnavailable,
    TelemetrySample,
    TelemetrySampler,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)
log = logging.getLogger("gpu-fan-daemon")

# (threshold, fan_speed_percent); threshold is watts or celsius
ZonePoint = tuple[int, int]
Zones = tuple[ZonePoint, ...]

POWER_ZONES: Zones = (
    (30, 30),
    (150, 40),
    (300, 60),
    (450, 80),
    (550, 100),
)
TEMPERATURE_ZONES: Zones = (
    (50, 50),
    (60, 75),
    (70, 100),
)

HWMON_ROOT = pathlib.Path("/sys/class/hwmon")
CHANNELS = (1, 2, 3, 4, 5, 6, 7)
PWM_FULL = 255


class PermissionDenied(Exception):
    """Not privileged enough to write the PWM registers."""


class BoundaryUnavailable(Exception):
    """The hwmon directory holding the PWM registers is missing."""


class ActuatorWriteError(Exception):
    """No fan channel accepted a register write."""


class Status(enum.Enum):
    EMERGENCY_OVERRIDE = "EmergencyOverride"
    MAXIMUM = "Maximum"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    IDLE = "Idle"


# Labels handed out from the top zone down; anything lower is IDLE.
_LABELS = (Status.MAXIMUM, Status.HIGH, Status.MEDIUM, Status.LOW)


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class ControlDecision:
    """Output of one policy evaluation."""

    target_pwm: int
    target_percent: int
    status: Status
    override_active: bool = False


def parse_zones(s: str) -> Zones:
    """Parse "threshold:percent,..." into a validated zone table."""
    points: list[ZonePoint] = []
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        pieces = part.split(":")
        if len(pieces) != 2:
            raise ValueError(
                "Invalid point format: %s (expected threshold:percent)" % part
            )
        try:
            points.append((int(pieces[0]), int(pieces[1])))
        except ValueError:
            raise ValueError("Zone values must be integers: %s" % part) from None
    points.sort(key=lambda p: p[0])
    return validate_zones(tuple(points))


def validate_zones(zones: Zones) -> Zones:
    """Check zones are ordered, contiguous and monotonic. Returns zones."""
    if len(zones) < 2:
        raise ValueError("Zone table must have at least 2 points")
    for threshold, percent in zones:
        if not 0 <= percent <= 100:
            raise ValueError("Percent must be 0-100, got %d" % percent)
        if threshold < 0:
            raise ValueError("Threshold must be >= 0, got %d" % threshold)
    for (t0, p0), (t1, p1) in zip(zones, zones[1:]):
        if t1 <= t0:
            raise ValueError("Thresholds must be strictly increasing: %d, %d" % (t0, t1))
        if p1 < p0:
            raise ValueError("Percents must not decrease: %d%% -> %d%%" % (p0, p1))
    return zones


def percent_to_pwm(percent: int) -> int:
    """Convert 0-100% to 0-255, rounding half up."""
    return (percent * PWM_FULL + 50) // 100


class FanPolicy(Protocol):
    """Maps a telemetry sample to a fan decision."""

    zones: Zones

    def decide(self, sample: TelemetrySample) -> ControlDecision: ...


class ZonePolicy(abc.ABC):
    """Piecewise-linear zone policy with a temperature emergency override.

    Subclasses choose which sample field drives the zones and what happens
    below the first threshold.
    """

    name: ClassVar[str]
    zones: Zones
    emergency_temp_celsius: int
    pwm_min: int
    pwm_max: int

    def __init__(
        self,
        zones: Zones,
        *,
        emergency_temp_celsius: int = 70,
        pwm_min: int = 77,
        pwm_max: int = PWM_FULL,
    ) -> None:
        self.zones = validate_zones(zones)
        self.emergency_temp_celsius = emergency_temp_celsius
        self.pwm_min = pwm_min
        self.pwm_max = pwm_max

    @abc.abstractmethod
    def input_value(self, sample: TelemetrySample) -> int: ...

    @abc.abstractmethod
    def below_zones(self, sample: TelemetrySample) -> int: ...

    def decide(self, sample: TelemetrySample) -> ControlDecision:
        if sample.temperature_c >= self.emergency_temp_celsius:
            return ControlDecision(
                target_pwm=self.pwm_max,
                target_percent=100,
                status=Status.EMERGENCY_OVERRIDE,
                override_active=True,
            )
        percent, status = self.lookup(self.input_value(sample), sample)
        return ControlDecision(
            target_pwm=max(self.pwm_min, min(self.pwm_max, percent_to_pwm(percent))),
            target_percent=percent,
            status=status,
        )

    def lookup(self, value: int, sample: TelemetrySample) -> tuple[int, Status]:
        """Interpolate within the zone containing value.

        Uses integer (truncating) division, so a zone's output steps in whole
        percents and the upper bound is only reached at the next threshold.
        """
        zones = self.zones
        if value < zones[0][0]:
            return max(0, min(100, self.below_zones(sample))), Status.IDLE

        idx = 0
        for i, (t, _) in enumerate(zones):
            if value >= t:
                idx = i
        rank = len(zones) - 1 - idx
        status = _LABELS[rank] if rank < len(_LABELS) else Status.IDLE

        low_t, low_pct = zones[idx]
        if idx == len(zones) - 1:
            return low_pct, status
        high_t, high_pct = zones[idx + 1]
        percent = low_pct + (value - low_t) * (high_pct - low_pct) // (high_t - low_t)
        return percent, status


class PowerPolicy(ZonePolicy):
    """Zones on GPU power draw (whole watts); floor below the first zone."""

    name = "power"

    def input_value(self, sample: TelemetrySample) -> int:
        return sample.power_draw_int

    def below_zones(self, sample: TelemetrySample) -> int:
        return self.zones[0][1]


class TemperaturePolicy(ZonePolicy):
    """Zones on GPU temperature; GPU fan percent passes through below them."""

    name = "temperature"

    def input_value(self, sample: TelemetrySample) -> int:
        return sample.temperature_c

    def below_zones(self, sample: TelemetrySample) -> int:
        return sample.fan_speed_percent


POLICIES: dict[str, tuple[type[ZonePolicy], Zones]] = {
    PowerPolicy.name: (PowerPolicy, POWER_ZONES),
    TemperaturePolicy.name: (TemperaturePolicy, TEMPERATURE_ZONES),
}


def _parse_channels(s: str) -> tuple[int, ...]:
    """Parse "1,2,3" or "1-7" into a tuple of channel numbers."""
    channels: set[int] = set()
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            channels.update(range(int(lo), int(hi) + 1))
        else:
            channels.add(int(part))
    if not channels:
        raise ValueError("No channels given")
    if min(channels) < 1 or max(channels) > len(CHANNELS):
        raise ValueError("Channels must be 1-%d" % len(CHANNELS))
    return tuple(sorted(channels))


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Config:
    """Daemon configuration."""

    policy: str = PowerPolicy.name
    zones: Zones | None = None  # None = policy default
    emergency_temp_celsius: int = 70
    interval_seconds: float = 5.0
    pwm_min: int = 77
    pwm_max: int = PWM_FULL
    hwmon_path: pathlib.Path | None = None  # None = auto-detect by name
    hwmon_name: str = "nct67"
    channels: tuple[int, ...] = CHANNELS
    gpu_index: int | None = None
    cmd_timeout_seconds: float = 5.0

    def make_policy(self) -> ZonePolicy:
        """Build the configured policy."""
        cls, default_zones = POLICIES[self.policy]
        return cls(
            self.zones if self.zones is not None else default_zones,
            emergency_temp_celsius=self.emergency_temp_celsius,
            pwm_min=self.pwm_min,
            pwm_max=self.pwm_max,
        )

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse command-line arguments and return Config."""
        p = argparse.ArgumentParser(
            description="Chassis fan daemon driven by GPU telemetry",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Zone format: THRESHOLD:PERCENT,THRESHOLD:PERCENT,...
  Thresholds are watts (power policy) or celsius (temperature policy).
  Percent is interpolated linearly between consecutive points and held at
  the last point's value above it.

  Defaults:
    power        30:30,150:40,300:60,450:80,550:100   (below 30W -> 30%%)
    temperature  50:50,60:75,70:100                   (below 50C -> GPU fan %%)

  Examples:
    --policy temperature
    --zones 50:30,200:50,400:100
    --hwmon-path /sys/class/hwmon/hwmon4 --channels 1-4
""",
        )
        d = cls()
        _ = p.add_argument(
            "--policy",
            choices=sorted(POLICIES),
            default=d.policy,
            help="Zone input.",
        )
        _ = p.add_argument(
            "--zones",
            type=str,
            default="",
            help="Zone table override.",
        )
        _ = p.add_argument(
            "--emergency-temp",
            type=int,
            default=d.emergency_temp_celsius,
            help="GPU temp (C) forcing full speed.",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=d.interval_seconds,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--pwm-min",
            type=int,
            default=d.pwm_min,
            help="Min PWM value (0-255).",
        )
        _ = p.add_argument(
            "--pwm-max",
            type=int,
            default=d.pwm_max,
            help="Max PWM value (0-255).",
        )
        _ = p.add_argument(
            "--hwmon-path",
            type=pathlib.Path,
            default=None,
            help="hwmon directory with pwmN files.",
        )
        _ = p.add_argument(
            "--hwmon-name",
            type=str,
            default=d.hwmon_name,
            help="hwmon chip name prefix for auto-detection.",
        )
        _ = p.add_argument(
            "--channels",
            type=str,
            default="1-7",
            help="PWM channels to drive, e.g. 1-7 or 1,3,5.",
        )
        _ = p.add_argument(
            "--gpu-index",
            type=int,
            default=None,
            help="nvidia-smi GPU index (default: first GPU).",
        )
        _ = p.add_argument(
            "--cmd-timeout",
            type=float,
            default=d.cmd_timeout_seconds,
            help="nvidia-smi timeout (seconds).",
        )
        args = p.parse_args(argv)
        pwm_min = cast(int, args.pwm_min)
        pwm_max = cast(int, args.pwm_max)
        if not 0 <= pwm_min < pwm_max <= PWM_FULL:
            p.error("need 0 <= --pwm-min < --pwm-max <= %d" % PWM_FULL)
        interval = cast(float, args.interval)
        if interval <= 0:
            p.error("--interval must be positive")
        zones: Zones | None = None
        zones_str = cast(str, args.zones)
        if zones_str.strip():
            try:
                zones = parse_zones(zones_str)
            except ValueError as e:
                p.error(str(e))
        try:
            channels = _parse_channels(cast(str, args.channels))
        except ValueError as e:
            p.error("--channels: %s" % e)
        return cls(
            policy=cast(str, args.policy),
            zones=zones,
            emergency_temp_celsius=cast(int, args.emergency_temp),
            interval_seconds=interval,
            pwm_min=pwm_min,
            pwm_max=pwm_max,
            hwmon_path=cast("pathlib.Path | None", args.hwmon_path),
            hwmon_name=cast(str, args.hwmon_name),
            channels=channels,
            gpu_index=cast("int | None", args.gpu_index),
            cmd_timeout_seconds=cast(float, args.cmd_timeout),
        )


def find_hwmon(name_prefix: str, root: pathlib.Path = HWMON_ROOT) -> pathlib.Path | None:
    """Find the first hwmon directory whose chip name starts with name_prefix."""
    if not root.is_dir():
        return None
    for hwmon in sorted(root.iterdir()):
        name_file = hwmon / "name"
        try:
            name = name_file.read_text().strip()
        except OSError:
            continue
        if name.startswith(name_prefix):
            return hwmon
    return None


class Mode(enum.IntEnum):
    """Values of pwmN_enable."""

    MANUAL = 1
    AUTOMATIC = 5


@dataclasses.dataclass(frozen=True, slots=True)
class ChannelState:
    mode: Mode
    pwm: int | None = None


class Actuator(Protocol):
    """Fan actuator interface."""

    def check(self) -> None: ...
    def apply(self, decision: ControlDecision) -> None: ...
    def restore_automatic(self) -> None: ...
    def read_rpms(self) -> dict[int, int]: ...


class Hwmon:
    """Chassis fan headers exposed by a Super I/O hwmon driver."""

    path: pathlib.Path | None
    channels: tuple[int, ...]
    applied: dict[int, ChannelState]

    def __init__(
        self,
        path: pathlib.Path | None,
        channels: tuple[int, ...] = CHANNELS,
    ) -> None:
        self.path = path
        self.channels = channels
        self.applied = {}

    @classmethod
    def from_config(cls, config: Config) -> Hwmon:
        path = config.hwmon_path
        if path is None:
            path = find_hwmon(config.hwmon_name)
        return cls(path, config.channels)

    def check(self) -> None:
        """Raise BoundaryUnavailable unless the hwmon directory exists."""
        if self.path is None:
            raise BoundaryUnavailable(
                "No hwmon device found. "
                "Make sure the nct6775 driver is loaded: sudo modprobe nct6775"
            )
        if not self.path.is_dir():
            raise BoundaryUnavailable(
                "Hardware monitor path not found: %s. "
                "Make sure the nct6775 driver is loaded: sudo modprobe nct6775"
                % self.path
            )
        log.info("Using hwmon %s", self.path)

    def apply(self, decision: ControlDecision) -> None:
        """Put every channel in manual mode at decision.target_pwm.

        Both registers are rewritten on every call; resume or firmware can put
        pwmN_enable back to automatic behind our back.
        """
        pwm = decision.target_pwm
        want = ChannelState(Mode.MANUAL, pwm)
        failed: list[int] = []
        for ch in self.channels:
            try:
                self._write("pwm%d_enable" % ch, Mode.MANUAL)
                self._write("pwm%d" % ch, pwm)
            except OSError as e:
                log.warning("Failed to set pwm%d to %d: %s", ch, pwm, e)
                _ = self.applied.pop(ch, None)
                failed.append(ch)
                continue
            self.applied[ch] = want
        if failed and len(failed) == len(self.channels):
            raise ActuatorWriteError("No fan channel accepted PWM %d" % pwm)

    def restore_automatic(self) -> None:
        """Hand every channel back to automatic control. Safe to repeat."""
        failed: list[int] = []
        for ch in self.channels:
            try:
                self._write("pwm%d_enable" % ch, Mode.AUTOMATIC)
            except OSError as e:
                log.warning("Failed to restore pwm%d to automatic: %s", ch, e)
                failed.append(ch)
                continue
            self.applied[ch] = ChannelState(Mode.AUTOMATIC)
        if failed and len(failed) == len(self.channels):
            raise ActuatorWriteError("No fan channel returned to automatic mode")

    def read_rpms(self) -> dict[int, int]:
        """Read fanN_input for each channel, skipping unreadable or stopped fans."""
        rpms: dict[int, int] = {}
        if self.path is None:
            return rpms
        for ch in self.channels:
            try:
                rpm = int((self.path / ("fan%d_input" % ch)).read_text().strip())
            except (OSError, ValueError):
                continue
            if rpm > 0:
                rpms[ch] = rpm
        return rpms

    def _write(self, name: str, value: int) -> None:
        if self.path is None:
            raise FileNotFoundError("no hwmon path")
        _ = (self.path / name).write_text("%d\n" % value)


class State(enum.Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting down"
    TERMINATED = "terminated"


class FanDaemon:
    """Main fan control daemon."""

    config: Config
    sampler: TelemetrySampler
    policy: FanPolicy
    actuator: Actuator
    state: State
    _stop: threading.Event

    def __init__(
        self,
        config: Config,
        sampler: TelemetrySampler,
        policy: FanPolicy,
        actuator: Actuator,
    ) -> None:
        self.config = config
        self.sampler = sampler
        self.policy = policy
        self.actuator = actuator
        self.state = State.INITIALIZING
        self._stop = threading.Event()

    def initialize(self) -> None:
        """Check privileges and the hwmon boundary. Raises on fatal problems."""
        if os.geteuid() != 0:
            raise PermissionDenied(
                "This daemon needs to run as root to control fans (sudo)"
            )
        self.actuator.check()
        self.state = State.RUNNING

    def control_loop(self) -> ControlDecision | None:
        """One cycle: sample, decide, apply, report."""
        try:
            sample = self.sampler.sample()
        except SensorUnavailable as e:
            log.error("%s", e)
            return None

        decision = self.policy.decide(sample)
        try:
            self.actuator.apply(decision)
        except ActuatorWriteError as e:
            log.error("%s", e)
        self._report(sample, decision)
        return decision

    def _report(self, sample: TelemetrySample, decision: ControlDecision) -> None:
        log.info(
            "%s | GPU: %dC %d%% | Power: %.2fW | Chassis: %d%% | %s",
            time.strftime("%H:%M:%S"),
            sample.temperature_c,
            sample.fan_speed_percent,
            sample.power_draw_w,
            decision.target_pwm * 100 // PWM_FULL,
            decision.status.value,
        )
        rpms = self.actuator.read_rpms()
        log.info(
            "  └─ %s",
            " ".join("Fan%d: %drpm" % (ch, rpm) for ch, rpm in sorted(rpms.items()))
            or "no fan readings",
        )

    def request_stop(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Wake the loop and make it shut down. Signal-handler safe."""
        log.info("Stop requested (signal %d)", signum or 0)
        self._stop.set()

    def shutdown(self) -> None:
        """Return fans to automatic control, once."""
        if self.state in (State.SHUTTING_DOWN, State.TERMINATED):
            return
        self.state = State.SHUTTING_DOWN
        log.info("Restoring automatic fan control...")
        try:
            self.actuator.restore_automatic()
        except ActuatorWriteError as e:
            log.error("%s", e)
        else:
            log.info("Fan control restored to automatic mode")
        self.state = State.TERMINATED

    def run(self) -> int:
        """Main daemon loop. Returns the process exit code."""
        _ = signal.signal(signal.SIGTERM, self.request_stop)
        _ = signal.signal(signal.SIGINT, self.request_stop)

        try:
            self.initialize()
        except (PermissionDenied, BoundaryUnavailable) as e:
            log.error("%s", e)
            self.state = State.TERMINATED
            return 1

        cfg = self.config
        log.info(
            "Starting: policy=%s emergency=%dC zones=%s interval=%.1fs channels=%s",
            cfg.policy,
            cfg.emergency_temp_celsius,
            ",".join("%d:%d" % z for z in self.policy.zones),
            cfg.interval_seconds,
            ",".join(str(c) for c in cfg.channels),
        )

        try:
            while not self._stop.is_set():
                try:
                    _ = self.control_loop()
                except Exception:
                    log.exception("Control loop error")
                _ = self._stop.wait(cfg.interval_seconds)
        finally:
            self.shutdown()
        return 0


def main() -> None:
    config = Config.from_args()
    hwmon = Hwmon.from_config(config)
    sampler = Nvidiasmi(config.gpu_index, config.cmd_timeout_seconds)
    daemon = FanDaemon(config, sampler, config.make_policy(), hwmon)
    raise SystemExit(daemon.run())


if __name__ == "__main__":
    main()
