"""Unit tests for gpu_sensors.py."""
# pyright: basic
# ruff: noqa: SLF001

from __future__ import annotations

from unittest.mock import patch

import pytest

import gpu_sensors


class TestRunCmd:
    """Tests for run_cmd helper function."""

    def test_success(self) -> None:
        result = gpu_sensors.run_cmd(["echo", "hello"])
        assert result == "hello\n"

    def test_failure_nonzero_exit(self) -> None:
        result = gpu_sensors.run_cmd(["false"])
        assert result is None

    def test_timeout(self) -> None:
        result = gpu_sensors.run_cmd(["sleep", "10"], timeout=0.1)
        assert result is None

    def test_command_not_found(self) -> None:
        result = gpu_sensors.run_cmd(["nonexistent_command_12345"])
        assert result is None


class TestParseSample:
    def test_basic(self) -> None:
        s = gpu_sensors.parse_sample("45, 30, 123.45, 20480, 32607\n")
        assert s == gpu_sensors.TelemetrySample(
            temperature_c=45,
            fan_speed_percent=30,
            power_draw_w=123.45,
            mem_used_mb=20480,
            mem_total_mb=32607,
        )

    def test_strips_whitespace(self) -> None:
        s = gpu_sensors.parse_sample("  62 ,  55 ,   401.9 , 100 , 200  ")
        assert s.temperature_c == 62
        assert s.fan_speed_percent == 55
        assert s.power_draw_w == 401.9

    def test_power_truncated_for_zones(self) -> None:
        s = gpu_sensors.parse_sample("45, 30, 149.99, 1, 2\n")
        assert s.power_draw_int == 149
        assert s.power_draw_w == 149.99

    def test_first_gpu_only(self) -> None:
        s = gpu_sensors.parse_sample("45, 30, 100.00, 1, 2\n80, 90, 500.00, 3, 4\n")
        assert s.temperature_c == 45

    def test_empty_output(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable):
            gpu_sensors.parse_sample("")

    def test_whitespace_output(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable):
            gpu_sensors.parse_sample("   \n  \n")

    def test_wrong_field_count(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable, match="Expected 5 fields"):
            gpu_sensors.parse_sample("45, 30, 100.0\n")

    def test_not_supported_field(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable, match="Unparseable"):
            gpu_sensors.parse_sample("45, [N/A], 100.0, 1, 2\n")

    def test_non_numeric_power(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable, match="Unparseable"):
            gpu_sensors.parse_sample("45, 30, abc, 1, 2\n")

    def test_non_finite_power(self) -> None:
        with pytest.raises(gpu_sensors.SensorUnavailable, match="not finite"):
            gpu_sensors.parse_sample("45, 30, nan, 1, 2\n")

    def test_hot_reading_is_kept(self) -> None:
        s = gpu_sensors.parse_sample("121, 100, 600.00, 1000, 32607\n")
        assert s.temperature_c == 121

    def test_sample_is_immutable(self) -> None:
        s = gpu_sensors.parse_sample("45, 30, 100.0, 1, 2\n")
        with pytest.raises(AttributeError):
            s.temperature_c = 50  # type: ignore[misc]


class TestNvidiasmi:
    @pytest.fixture
    def sensor(self) -> gpu_sensors.Nvidiasmi:
        return gpu_sensors.Nvidiasmi()

    def test_sample(self, sensor: gpu_sensors.Nvidiasmi) -> None:
        with patch.object(gpu_sensors, "run_cmd", return_value="65, 40, 320.10, 1000, 32607\n"):
            s = sensor.sample()
        assert s.temperature_c == 65
        assert s.power_draw_int == 320

    def test_command_failure(self, sensor: gpu_sensors.Nvidiasmi) -> None:
        with patch.object(gpu_sensors, "run_cmd", return_value=None):
            with pytest.raises(gpu_sensors.SensorUnavailable, match="failed or timed out"):
                _ = sensor.sample()

    def test_empty_output(self, sensor: gpu_sensors.Nvidiasmi) -> None:
        with patch.object(gpu_sensors, "run_cmd", return_value=""):
            with pytest.raises(gpu_sensors.SensorUnavailable):
                _ = sensor.sample()

    def test_calls_nvidia_smi_correctly(self, sensor: gpu_sensors.Nvidiasmi) -> None:
        with patch.object(
            gpu_sensors, "run_cmd", return_value="65, 40, 320.10, 1000, 32607\n"
        ) as mock:
            _ = sensor.sample()
            mock.assert_called_once_with(
                [
                    "nvidia-smi",
                    "--query-gpu=temperature.gpu,fan.speed,power.draw,memory.used,memory.total",
                    "--format=csv,noheader,nounits",
                ],
                5.0,
            )

    def test_gpu_index_and_timeout(self) -> None:
        sensor = gpu_sensors.Nvidiasmi(gpu_index=1, timeout=2.0)
        with patch.object(
            gpu_sensors, "run_cmd", return_value="65, 40, 320.10, 1000, 32607\n"
        ) as mock:
            _ = sensor.sample()
        cmd, timeout = mock.call_args.args
        assert cmd[-2:] == ["-i", "1"]
        assert timeout == 2.0
