# -*- coding: utf-8 -*-

# NOTES
# Shared helpers: configuration, logging, the serial read primitive, serial port discovery and the parallel runner used by the poller.

import concurrent.futures
import configparser
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

import serial
import serial.tools.list_ports

# Logging
logging.basicConfig()
logger = logging.getLogger("DalyBms")

DRIVER_VERSION = "1.2.0"

PATH = Path(__file__).parents[0]
DEFAULT_CONFIG_FILE_PATH = str(PATH.joinpath("config.default.ini").absolute())
CUSTOM_CONFIG_FILE_PATH = str(PATH.joinpath("config.ini").absolute())

# Section holding all scalar settings
SETTINGS_SECTION = "DEFAULT"
# Section mapping bus identifier (usb vendor:product or device path) to logical pack id
DEVICES_SECTION = "DEVICES"
# Per pack sections are named "PACK <logical pack id>"
PACK_SECTION_PREFIX = "PACK "


class Config:
    """Typed access to the layered ini configuration. The default file is always read first, the custom file overrides it.
    An instance is passed to every component that needs settings, and ``reload()`` picks up changes made while running."""

    def __init__(self, custom_config_file_path: Optional[str] = None, default_config_file_path: str = DEFAULT_CONFIG_FILE_PATH):
        self.default_config_file_path = default_config_file_path
        self.custom_config_file_path = custom_config_file_path or CUSTOM_CONFIG_FILE_PATH
        self.parser = self._new_parser()
        self.reload()

    @staticmethod
    def _new_parser() -> configparser.ConfigParser:
        # ":" is part of usb ids like "1a86:7523", so only "=" separates keys from values
        parser = configparser.ConfigParser(delimiters=("=",), interpolation=None)
        parser.optionxform = str
        return parser

    def reload(self) -> None:
        # configurations built from dictionaries have no files to re-read
        if self.default_config_file_path is None:
            return
        parser = self._new_parser()
        read_files = parser.read([self.default_config_file_path, self.custom_config_file_path])
        logger.debug(f"Loaded configuration from {', '.join(read_files) if read_files else 'nothing'}")
        self.parser = parser

    @classmethod
    def from_dict(cls, settings: dict, sections: Optional[dict] = None) -> "Config":
        """Build a configuration from dictionaries instead of files. Values are converted to strings, like they would be read from disk."""
        config = cls.__new__(cls)
        config.default_config_file_path = None
        config.custom_config_file_path = None
        parser = cls._new_parser()
        parser.read_dict({SETTINGS_SECTION: {k: str(v) for k, v in settings.items()}})
        for section, values in (sections or {}).items():
            parser.read_dict({section: {k: str(v) for k, v in values.items()}})
        config.parser = parser
        return config

    def get_str(self, option: str, default: Optional[str] = None, section: str = SETTINGS_SECTION) -> Optional[str]:
        value = self.parser.get(section, option, fallback=None)
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def get_int(self, option: str, default: int = 0, section: str = SETTINGS_SECTION) -> int:
        value = self.get_str(option, None, section)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            pass
        # hex values like 0x40
        try:
            return int(value, 0)
        except ValueError:
            logger.error(f'Invalid integer "{value}" for {option} in [{section}], using default {default}')
            return default

    def get_float(self, option: str, default: float = 0.0, section: str = SETTINGS_SECTION) -> float:
        value = self.get_str(option, None, section)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.error(f'Invalid number "{value}" for {option} in [{section}], using default {default}')
            return default

    def get_bool(self, option: str, default: bool = False, section: str = SETTINGS_SECTION) -> bool:
        value = self.get_str(option, None, section)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    def get_section(self, section: str) -> List[Tuple[str, str]]:
        """Return the options defined in a section, without the inherited DEFAULT values."""
        if not self.parser.has_section(section):
            return []
        defaults = self.parser.defaults()
        return [(key, value.strip()) for key, value in self.parser.items(section) if key not in defaults]

    def cell_count(self) -> int:
        return self.get_int("CELL_COUNT", 16)


def setup_logging(level: str = "INFO", logfile: Optional[str] = None) -> None:
    """Configure log level and optional file output for the service."""
    loglevel = getattr(logging, level.upper(), logging.INFO)

    if logfile:
        file_handler = logging.FileHandler(logfile)
        file_handler.setLevel(loglevel)
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s: %(message)s"))
        logger.addHandler(file_handler)

    logger.setLevel(loglevel)


def read_serial_bytes(ser: serial.Serial, length: int, timeout_seconds: float) -> bytes:
    """
    Read up to ``length`` bytes, waiting at most ``timeout_seconds`` in total.

    Every read uses the native pyserial timeout, set to the time remaining until the deadline, so the call never blocks
    longer than requested. Returns whatever was received, which is shorter than ``length`` on timeout.
    """
    data = bytearray()
    deadline = time.monotonic() + timeout_seconds

    while len(data) < length:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        ser.timeout = remaining
        chunk = ser.read(length - len(data))
        if chunk:
            data.extend(chunk)

    return bytes(data)


def find_serial_port(usb_id: str) -> Optional[str]:
    """
    Resolve a bus identifier to a serial device path.

    ``usb_id`` is either a device path like ``/dev/ttyUSB0`` or a usb ``vendor:product`` id like ``1a86:7523``.
    """
    if usb_id.startswith("/"):
        return usb_id if os.path.exists(usb_id) else None

    wanted = usb_id.lower()
    for port in serial.tools.list_ports.comports():
        if port.vid is None or port.pid is None:
            continue
        if f"{port.vid:04x}:{port.pid:04x}" == wanted:
            logger.debug(f"Found {port.device} for {usb_id}")
            return port.device

    return None


class PollTimeoutError(Exception):
    """Raised when parallel work did not finish before the join deadline."""


InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")


def run_in_parallel(
    executor: concurrent.futures.Executor,
    items: Iterable[InputT],
    mapper: Callable[[InputT], Optional[OutputT]],
    timeout_seconds: float,
) -> List[OutputT]:
    """
    Apply ``mapper`` to all items on the executor and wait for all of them.

    ``None`` results are dropped. The first exception raised by a mapper is re-raised. If not all items finished within
    ``timeout_seconds``, PollTimeoutError is raised; unfinished work keeps running in the executor.
    """
    futures = [executor.submit(mapper, item) for item in items]
    if not futures:
        return []

    done, not_done = concurrent.futures.wait(futures, timeout=timeout_seconds)
    if not_done:
        raise PollTimeoutError(f"{len(not_done)} of {len(futures)} tasks did not finish within {timeout_seconds} seconds")

    results = []
    # keep submission order, so results are stable across ticks
    for future in futures:
        result = future.result()
        if result is not None:
            results.append(result)
    return results


def exception_location() -> str:
    """Describe the exception currently being handled as "<repr> in <file> line #<line>"."""
    exception_type, exception_object, exception_traceback = sys.exc_info()
    if exception_traceback is None:
        return "no exception"
    while exception_traceback.tb_next is not None:
        exception_traceback = exception_traceback.tb_next
    file = exception_traceback.tb_frame.f_code.co_filename
    line = exception_traceback.tb_lineno
    return f"{repr(exception_object)} of type {exception_type} in {file} line #{line}"
