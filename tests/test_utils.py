"""
Tests for the helpers in utils.py: configuration, the serial read primitive, port discovery and the parallel runner.
"""

import pytest
import serial
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch
from utils import Config, PollTimeoutError, find_serial_port, read_serial_bytes, run_in_parallel


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_serial() -> MagicMock:
    """Create a mock serial port that returns no data."""
    mock_ser = MagicMock(spec=serial.Serial)
    mock_ser.read.return_value = b""
    return mock_ser


@pytest.fixture
def executor():
    with ThreadPoolExecutor(max_workers=4) as pool:
        yield pool


# =============================================================================
# Tests for Config
# =============================================================================


class TestConfig:
    def test_typed_getters(self) -> None:
        config = Config.from_dict({"A_INT": 7, "A_HEX": "0x40", "A_FLOAT": "3.55", "A_BOOL": "True", "A_OFF": "no", "EMPTY": ""})

        assert config.get_int("A_INT") == 7
        assert config.get_int("A_HEX") == 0x40
        assert config.get_float("A_FLOAT") == pytest.approx(3.55)
        assert config.get_bool("A_BOOL") is True
        assert config.get_bool("A_OFF") is False
        assert config.get_str("EMPTY", "fallback") == "fallback"
        assert config.get_int("MISSING", 5) == 5

    def test_invalid_number_falls_back_to_default(self) -> None:
        config = Config.from_dict({"RETRIES": "three", "CUTOFF": "high"})

        assert config.get_int("RETRIES", 3) == 3
        assert config.get_float("CUTOFF", 3.55) == pytest.approx(3.55)

    def test_section_excludes_inherited_defaults(self) -> None:
        config = Config.from_dict({"CELL_COUNT": 16}, {"DEVICES": {"1a86:7523": "pack1", "/dev/ttyUSB3": "pack2"}})

        assert config.get_section("DEVICES") == [("1a86:7523", "pack1"), ("/dev/ttyUSB3", "pack2")]
        assert config.get_section("NOT_THERE") == []

    def test_custom_file_overrides_default_and_reload_picks_up_changes(self, tmp_path) -> None:
        default_file = tmp_path / "config.default.ini"
        custom_file = tmp_path / "config.ini"
        default_file.write_text("[DEFAULT]\nCELL_COUNT = 16\nMAX_RETRIES = 3\n\n[DEVICES]\n")
        custom_file.write_text("[DEFAULT]\nMAX_RETRIES = 5\n")

        config = Config(str(custom_file), str(default_file))
        assert config.cell_count() == 16
        assert config.get_int("MAX_RETRIES") == 5
        assert config.get_section("DEVICES") == []

        custom_file.write_text("[DEFAULT]\nMAX_RETRIES = 5\n\n[DEVICES]\n1a86:7523 = pack1\n")
        config.reload()
        assert config.get_section("DEVICES") == [("1a86:7523", "pack1")]

    def test_missing_custom_file_uses_defaults(self, tmp_path) -> None:
        default_file = tmp_path / "config.default.ini"
        default_file.write_text("[DEFAULT]\nCELL_COUNT = 8\n")

        config = Config(str(tmp_path / "does_not_exist.ini"), str(default_file))

        assert config.cell_count() == 8


# =============================================================================
# Tests for read_serial_bytes()
# =============================================================================


class TestReadSerialBytes:
    def test_returns_as_soon_as_length_is_reached(self, mock_serial: MagicMock) -> None:
        mock_serial.read.side_effect = [bytes.fromhex("a5 01 90 08"), bytes.fromhex("00" * 9)]

        result = read_serial_bytes(mock_serial, 13, 1.0)

        assert result == bytes.fromhex("a5 01 90 08") + bytes(9)
        assert mock_serial.read.call_count == 2
        # the second read only asks for what is still missing
        mock_serial.read.assert_called_with(9)

    def test_returns_partial_data_on_timeout(self, mock_serial: MagicMock) -> None:
        mock_serial.read.side_effect = [b"\xa5", b""]

        with patch("time.monotonic", side_effect=[0.0, 0.0, 0.5, 1.1]):
            result = read_serial_bytes(mock_serial, 13, 1.0)

        assert result == b"\xa5"
        assert mock_serial.read.call_count == 2

    def test_port_timeout_is_set_to_remaining_time(self, mock_serial: MagicMock) -> None:
        mock_serial.read.return_value = bytes(13)

        with patch("time.monotonic", side_effect=[10.0, 10.25]):
            read_serial_bytes(mock_serial, 13, 1.0)

        assert mock_serial.timeout == pytest.approx(0.75)

    def test_zero_timeout_does_not_read(self, mock_serial: MagicMock) -> None:
        assert read_serial_bytes(mock_serial, 1024, 0) == b""
        mock_serial.read.assert_not_called()


# =============================================================================
# Tests for find_serial_port()
# =============================================================================


class TestFindSerialPort:
    @staticmethod
    def port(device: str, vid, pid) -> MagicMock:
        port = MagicMock()
        port.device = device
        port.vid = vid
        port.pid = pid
        return port

    def test_usb_id_is_matched_against_vendor_and_product(self) -> None:
        ports = [self.port("/dev/ttyAMA0", None, None), self.port("/dev/ttyUSB1", 0x0403, 0x6001), self.port("/dev/ttyUSB0", 0x1A86, 0x7523)]

        with patch("serial.tools.list_ports.comports", return_value=ports):
            assert find_serial_port("1a86:7523") == "/dev/ttyUSB0"
            assert find_serial_port("1A86:7523") == "/dev/ttyUSB0"
            assert find_serial_port("10c4:ea60") is None

    @pytest.mark.parametrize("exists", [True, False])
    def test_device_path_is_used_when_present(self, exists: bool) -> None:
        with patch("os.path.exists", return_value=exists):
            assert find_serial_port("/dev/ttyUSB3") == ("/dev/ttyUSB3" if exists else None)


# =============================================================================
# Tests for run_in_parallel()
# =============================================================================


class TestRunInParallel:
    def test_results_in_submission_order_without_none(self, executor) -> None:
        result = run_in_parallel(executor, [1, 2, 3, 4], lambda x: None if x == 3 else x * 10, 5)

        assert result == [10, 20, 40]

    def test_empty_input(self, executor) -> None:
        assert run_in_parallel(executor, [], lambda x: x, 5) == []

    def test_mapper_exception_is_raised(self, executor) -> None:
        def mapper(x):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            run_in_parallel(executor, [1], mapper, 5)

    def test_timeout_raises_poll_timeout_error(self, executor) -> None:
        release = threading.Event()
        try:
            with pytest.raises(PollTimeoutError):
                run_in_parallel(executor, [1, 2], lambda x: release.wait(5) if x == 2 else x, 0.05)
        finally:
            release.set()
