#!/usr/bin/env python3
# pyright: basic
"""
Plot gpu-fan-daemon status lines from the systemd journal.

Usage:
    ./visualize_fans.py                          # current boot
    ./visualize_fans.py --since "2 hours ago"    # any journalctl --since value
    ./visualize_fans.py --npz results/fans.npz   # also keep the parsed series
"""

from __future__ import annotations

import argparse
import re
import subprocess
import sys
from datetime import datetime
from pathlib import Path

import numpy as np

SERVICE = "gpu-fan-daemon"
DEFAULT_PNG = Path("results") / "fans.png"

# "2026-01-04T10:08:06-08:00 host gpu-fan-daemon[123]: MSG"
JOURNAL_LINE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:?\d{2})\s+\S+\s+\S+\[\d+\]:\s*(.*)"
)
# "INFO: 10:08:06 | GPU: 45C 30% | Power: 120.50W | Chassis: 36% | Idle"
STATUS_LINE = re.compile(r"GPU: (\d+)C (\d+)% \| Power: ([\d.]+)W \| Chassis: (\d+)%")
# "INFO:   └─ Fan1: 850rpm Fan2: 900rpm"
FAN_RPM = re.compile(r"Fan(\d+): (\d+)rpm")

PERCENT_SERIES = {
    "gpu_temp": ("GPU temp (C)", "tab:red"),
    "gpu_fan": ("GPU fan (%)", "tab:green"),
    "chassis": ("Chassis fans (%)", "tab:blue"),
}


def journal_command(since: str | None = None) -> list[str]:
    cmd = ["journalctl", "-u", SERVICE, "--no-pager", "--output=short-iso"]
    if since:
        cmd.extend(["--since", since])
    else:
        cmd.append("--boot")
    return cmd


def read_journal(since: str | None = None) -> str | None:
    """Return the daemon's journal text, or None if journalctl failed."""
    r = subprocess.run(journal_command(since), capture_output=True, text=True, check=False)
    if r.returncode != 0:
        print(f"journalctl failed: {r.stderr.strip()}", file=sys.stderr)
        return None
    return r.stdout


def parse_logs(log_text: str) -> dict[str, np.ndarray]:
    """Turn journal text into equal-length float arrays keyed by series.

    A status line opens a sample and the RPM line after it adds fanN
    values to that sample. Series missing from a sample are NaN.
    """
    rows: list[tuple[float, dict[str, float]]] = []
    current: dict[str, float] | None = None
    for line in log_text.splitlines():
        m = JOURNAL_LINE.match(line)
        if not m:
            continue
        stamp, msg = m.groups()
        status = STATUS_LINE.search(msg)
        if status:
            current = None
            try:
                ts = datetime.fromisoformat(stamp).timestamp()
            except ValueError:  # "-0800" offsets need Python 3.11
                continue
            temp, gpu_fan, power, chassis = (float(v) for v in status.groups())
            current = {"gpu_temp": temp, "gpu_fan": gpu_fan, "power": power, "chassis": chassis}
            rows.append((ts, current))
        elif current is not None:
            for ch, rpm in FAN_RPM.findall(msg):
                current[f"fan{ch}"] = float(rpm)

    if not rows:
        return {}
    keys = sorted({k for _, values in rows for k in values})
    data = {"timestamps": np.array([t for t, _ in rows], dtype=np.float64)}
    for key in keys:
        data[key] = np.array([values.get(key, np.nan) for _, values in rows], dtype=np.float64)
    return data


def plot_data(data: dict[str, np.ndarray], path: Path) -> None:
    """Plot GPU temp, GPU fan and chassis percent on one axis, GPU power on a second."""
    try:
        import matplotlib.dates as mdates
        import matplotlib.pyplot as plt
    except ImportError:
        print("matplotlib not installed, skipping plot", file=sys.stderr)
        return

    dates = [datetime.fromtimestamp(t) for t in data["timestamps"]]
    marker_every = max(1, len(dates) // 200)
    style = {"linewidth": 0.8, "marker": ".", "markersize": 2, "markevery": marker_every}

    fig, ax1 = plt.subplots(figsize=(14, 7))
    for key, (label, color) in PERCENT_SERIES.items():
        if key in data:
            ax1.plot(dates, data[key], label=label, color=color, alpha=0.8, **style)  # pyright: ignore[reportArgumentType]
    ax1.set_ylabel("Temperature (C) / Fan speed (%)")
    ax1.set_ylim(0, 100)
    ax1.grid(True, alpha=0.3)

    ax2 = ax1.twinx()
    if "power" in data:
        ax2.plot(dates, data["power"], label="GPU power (W)", color="black", linestyle="--", **style)  # pyright: ignore[reportArgumentType]
    ax2.set_ylabel("Power (W)")
    ax2.set_ylim(bottom=0)

    locator = mdates.AutoDateLocator()
    ax1.xaxis.set_major_locator(locator)
    ax1.xaxis.set_major_formatter(mdates.ConciseDateFormatter(locator))

    lines1, labels1 = ax1.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax1.legend(lines1 + lines2, labels1 + labels2, loc="upper left", fontsize=8)
    ax1.set_title("GPU Fan Daemon: GPU Telemetry and Chassis Fan Speed")
    fig.tight_layout()

    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=150)
    plt.close(fig)
    print(f"Saved {path}")


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    _ = p.add_argument(
        "--since",
        help="Passed to journalctl --since, e.g. '2 hours ago' or '2026-01-04 10:30'"
        " (default: current boot)",
    )
    _ = p.add_argument("--npz", type=Path, help="Also save the parsed series to this npz file")
    _ = p.add_argument("--png", type=Path, default=DEFAULT_PNG, help=f"Plot path (default: {DEFAULT_PNG})")
    args = p.parse_args(argv)

    text = read_journal(args.since)
    if text is None:
        return 1
    data = parse_logs(text)
    if not data:
        print("No status lines found", file=sys.stderr)
        return 1
    print(f"Parsed {len(data['timestamps'])} samples")

    if args.npz is not None:
        args.npz.parent.mkdir(parents=True, exist_ok=True)
        np.savez(args.npz, **data)
        print(f"Saved {args.npz}")
    plot_data(data, args.png)
    return 0


if __name__ == "__main__":
    sys.exit(main())
