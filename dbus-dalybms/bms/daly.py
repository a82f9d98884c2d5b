# -*- coding: utf-8 -*-

# NOTES
# UART/USB support for Daly smart BMS.
#
# Protocol reference: https://diysolarforum.com/resources/daly-smart-bms-manual-and-documentation.48/
# Every request and every response is a 13 byte frame:
#   0xA5 | address | command id | 0x08 | 8 data bytes | checksum (sum of the first 12 bytes, lowest 8 bits)
# The cell voltage command is answered with one frame per 3 cells, the first data byte of each frame is its 1-based number.
# Requests carry the host address (0x40 on current hardware, 0x80 seen on older firmware), responses come back with address 0x01.

from battery import BmsData, BmsId, BmsStatus
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from struct import Struct
from typing import Dict, List, Optional, Sequence, Tuple
from utils import Config, logger, read_serial_bytes
import math
import serial
import soc_estimator

FRAME_LENGTH = 13
START_BYTE = 0xA5
DATA_LENGTH = 0x08
DEFAULT_HOST_ADDRESS = 0x40
DEFAULT_RESPONSE_ADDRESS = 0x01

# Cell voltages are sent as 11 frames with 3 cells each, the unused tail is cut to the configured cell count
CELL_VOLTAGE_FRAMES = 11
CELLS_PER_FRAME = 3

# Raw current is sent with an offset of 30000 in 0.1 A units
CURRENT_OFFSET = 30000
# Raw temperatures are sent with an offset of 40 degrees
TEMPERATURE_OFFSET = 40

RX_BUFFER_SIZE = 1024

DEFAULT_MAX_RETRIES = 3
DEFAULT_DRAIN_SECONDS = 1.0
DEFAULT_SINGLE_FRAME_TIMEOUT_SECONDS = 0.5
DEFAULT_MULTI_FRAME_TIMEOUT_SECONDS = 1.0

BIG_ENDIAN_SHORT_INT_STRUCT = Struct(">H")
BIG_ENDIAN_INT_STRUCT = Struct(">I")


class DalyProtocolError(Exception):
    """Raised when the BMS answers with something that can't be used."""


class FrameSequenceError(DalyProtocolError):
    """Raised when the frames of a multi frame response are missing or out of sequence."""


class ExchangeError(DalyProtocolError):
    """Raised when a command didn't get a valid response within the retries."""


class DalyCommand(Enum):
    VOUT_IOUT_SOC = 0x90
    MIN_MAX_CELL_VOLTAGE = 0x91
    MIN_MAX_TEMPERATURE = 0x92
    DISCHARGE_CHARGE_MOS_STATUS = 0x93
    STATUS_INFO = 0x94
    CELL_VOLTAGES = 0x95
    CELL_TEMPERATURE = 0x96
    CELL_BALANCE_STATE = 0x97
    FAILURE_CODES = 0x98
    DISCHARGE_FET = 0xD9
    CHARGE_FET = 0xDA
    BMS_RESET = 0x00
    WRITE_SOC = 0x21


# (byte, bit) of the failure code response -> description
FAILURE_CODES: Dict[Tuple[int, int], str] = {
    (0, 0): "Cell voltage is too high level one alarm",
    (0, 1): "Cell voltage is too high level two alarm",
    (0, 2): "Cell voltage is too low level one alarm",
    (0, 3): "Cell voltage is too low level two alarm",
    (0, 4): "Total voltage is too high level one alarm",
    (0, 5): "Total voltage is too high level two alarm",
    (0, 6): "Total voltage is too low level one alarm",
    (0, 7): "Total voltage is too low level two alarm",
    (1, 0): "Charging temperature too high level one alarm",
    (1, 1): "Charging temperature too high level two alarm",
    (1, 2): "Charging temperature too low level one alarm",
    (1, 3): "Charging temperature too low level two alarm",
    (1, 4): "Discharging temperature too high level one alarm",
    (1, 5): "Discharging temperature too high level two alarm",
    (1, 6): "Discharging temperature too low level one alarm",
    (1, 7): "Discharging temperature too low level two alarm",
    (2, 0): "Charge over current level one alarm",
    (2, 1): "Charge over current level two alarm",
    (2, 2): "Discharge over current level one alarm",
    (2, 3): "Discharge over current level two alarm",
    (2, 4): "SOC is too high level one alarm",
    (2, 5): "SOC is too high level two alarm",
    (2, 6): "SOC is too low level one alarm",
    (2, 7): "SOC is too low level two alarm",
    (3, 0): "Excessive cell voltage difference level one alarm",
    (3, 1): "Excessive cell voltage difference level two alarm",
    (3, 2): "Excessive temperature difference level one alarm",
    (3, 3): "Excessive temperature difference level two alarm",
    (4, 0): "Charging MOS overtemperature warning",
    (4, 1): "Discharging MOS overtemperature warning",
    (4, 2): "Charging MOS temperature sensor failure",
    (4, 3): "Discharging MOS temperature sensor failure",
    (4, 4): "Charging MOS adhesion failure",
    (4, 5): "Discharging MOS adhesion failure",
    (4, 6): "Charging MOS breaker failure",
    (4, 7): "Discharging MOS breaker failure",
    (5, 0): "AFE acquisition chip malfunction",
    (5, 1): "Cell voltage collection disconnected",
    (5, 2): "Single temperature sensor failure",
    (5, 3): "EEPROM storage failure",
    (5, 4): "RTC clock malfunction",
    (5, 5): "Precharge failure",
    (5, 6): "Vehicle communication malfunction",
    (5, 7): "Intranet communication module malfunction",
    (6, 0): "Current module failure",
    (6, 1): "Main voltage detection module failure",
    (6, 2): "Short circuit protection failure",
    (6, 3): "Low voltage no charging",
}


@dataclass(frozen=True)
class ResponseFrame:
    start_byte: int
    address: int
    command_id: int
    length: int
    data: bytes
    checksum_valid: bool
    raw: bytes

    @property
    def sequence_number(self) -> int:
        """1-based frame number of a multi frame response"""
        return self.data[0]

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ResponseFrame":
        if len(raw) != FRAME_LENGTH:
            raise DalyProtocolError(f"Frame must be {FRAME_LENGTH} bytes, got {len(raw)}")
        return cls(
            start_byte=raw[0],
            address=raw[1],
            command_id=raw[2],
            length=raw[3],
            data=bytes(raw[4:12]),
            checksum_valid=checksum(raw) == raw[12],
            raw=bytes(raw),
        )


def checksum(data: bytes) -> int:
    """Sum of the first 12 bytes, truncated to 8 bits."""
    return sum(data[: FRAME_LENGTH - 1]) & 0xFF


def encode_command(
    command: DalyCommand,
    host_address: int = DEFAULT_HOST_ADDRESS,
    soc: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bytes:
    """Build the 13 byte request frame for a command. Only WRITE_SOC carries a payload, all reads send zeros."""
    buf = bytearray(FRAME_LENGTH)
    buf[0] = START_BYTE
    buf[1] = host_address
    buf[2] = command.value
    buf[3] = DATA_LENGTH

    if command == DalyCommand.WRITE_SOC:
        if soc is None or not 0 <= soc <= 100:
            raise ValueError(f"Invalid soc {soc}")
        now = now or datetime.now()
        buf[4] = now.year % 100
        buf[5] = now.month
        buf[6] = now.day
        buf[7] = now.hour
        buf[8] = now.minute
        buf[9] = now.second
        BIG_ENDIAN_SHORT_INT_STRUCT.pack_into(buf, 10, soc * 10)

    buf[12] = checksum(buf)
    return bytes(buf)


def decode_frames(buffer: bytes, command_id: int, address: int = DEFAULT_RESPONSE_ADDRESS) -> List[ResponseFrame]:
    """
    Find all frames of one command in a buffer.

    Scans for the start pattern (0xA5, address, command id, 0x08). An offset that doesn't match advances the scan by one byte,
    so garbage in front of or between frames is skipped. Frames with a bad checksum are returned with checksum_valid=False.
    """
    frames = []
    pos = 0
    while pos + FRAME_LENGTH <= len(buffer):
        if buffer[pos] != START_BYTE or buffer[pos + 1] != address or buffer[pos + 2] != command_id or buffer[pos + 3] != DATA_LENGTH:
            pos += 1
            continue

        frame = ResponseFrame.from_bytes(buffer[pos : pos + FRAME_LENGTH])
        if not frame.checksum_valid:
            logger.debug(f"Checksum failure at pos={pos}, expected 0x{checksum(frame.raw):02X}, got 0x{frame.raw[12]:02X}: {frame.raw.hex(' ')}")
        frames.append(frame)
        pos += FRAME_LENGTH

    return frames


def assemble_cell_voltages(frames: Sequence[ResponseFrame], cell_count: int) -> List[float]:
    """
    Turn the frames of a cell voltage response into the ordered list of cell voltages.

    Frames are deduplicated by their number and sorted. After sorting every frame number has to equal its position,
    otherwise a frame is missing and FrameSequenceError is raised.
    """
    unique: Dict[int, ResponseFrame] = {}
    for frame in frames:
        unique.setdefault(frame.sequence_number, frame)

    voltages: List[float] = []
    for index, sequence_number in enumerate(sorted(unique)):
        if sequence_number != index + 1:
            raise FrameSequenceError(f"Frame number {sequence_number} at position {index + 1}, got frames {sorted(unique)}")
        data = unique[sequence_number].data
        for i in range(CELLS_PER_FRAME):
            if len(voltages) >= cell_count:
                break
            voltages.append(from_raw_cell_voltage_to_volts(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(data, 1 + 2 * i)[0]))

    if len(voltages) != cell_count:
        raise FrameSequenceError(f"Expected {cell_count} cell voltages, got {len(voltages)}")
    return voltages


def required_cell_voltage_frames(cell_count: int) -> int:
    return math.ceil(cell_count / CELLS_PER_FRAME)


def parse_failure_codes(data: bytes) -> List[str]:
    errors = []
    for (byte_n, bit_n), description in FAILURE_CODES.items():
        if data[byte_n] & (1 << bit_n):
            errors.append(description)
    return errors


def parse_status(raw_value: int, bms_id: str) -> BmsStatus:
    try:
        return BmsStatus(raw_value)
    except ValueError:
        logger.error(f"{bms_id} - No BmsStatus for {raw_value}")
        return BmsStatus.STATIONARY


def from_raw_voltage_to_volts(raw_value: int) -> float:
    return raw_value / 10


def from_raw_current_to_amps(raw_value: int) -> float:
    return (raw_value - CURRENT_OFFSET) / 10


def from_raw_soc_to_percent(raw_value: int) -> float:
    return raw_value / 10


def from_raw_cell_voltage_to_volts(raw_value: int) -> float:
    return raw_value / 1000


def from_raw_temperature_to_celsius(raw_value: int) -> int:
    return raw_value - TEMPERATURE_OFFSET


def from_raw_capacity_to_ah(raw_value: int) -> float:
    return raw_value / 1000


def parse_data(
    bms_id: BmsId,
    vout_iout_soc: ResponseFrame,
    min_max_cell: ResponseFrame,
    min_max_temp: ResponseFrame,
    charge_discharge_status: ResponseFrame,
    status_info: ResponseFrame,
    cell_voltages: Sequence[float],
    failure_codes: ResponseFrame,
    timestamp: Optional[datetime] = None,
) -> BmsData:
    """Combine the responses of one poll into a snapshot."""
    current = from_raw_current_to_amps(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(vout_iout_soc.data, 4)[0])
    charging = current > 0
    soc_estimates = tuple(soc_estimator.estimate(voltage, charging) for voltage in cell_voltages)

    return BmsData(
        bms_id=bms_id,
        timestamp=timestamp or datetime.now(timezone.utc),
        voltage=from_raw_voltage_to_volts(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(vout_iout_soc.data, 0)[0]),
        current=current,
        soc=from_raw_soc_to_percent(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(vout_iout_soc.data, 6)[0]),
        avg_estimated_soc=soc_estimator.estimate_average(cell_voltages, charging),
        max_cell_voltage=from_raw_cell_voltage_to_volts(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(min_max_cell.data, 0)[0]),
        max_cell_number=min_max_cell.data[2],
        min_cell_voltage=from_raw_cell_voltage_to_volts(BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(min_max_cell.data, 3)[0]),
        min_cell_number=min_max_cell.data[5],
        max_temp=from_raw_temperature_to_celsius(min_max_temp.data[0]),
        max_temp_cell_number=min_max_temp.data[1],
        min_temp=from_raw_temperature_to_celsius(min_max_temp.data[2]),
        min_temp_cell_number=min_max_temp.data[3],
        status=parse_status(charge_discharge_status.data[0], bms_id.bms_id),
        mosfet_charging=charge_discharge_status.data[1] == 1,
        mosfet_discharging=charge_discharge_status.data[2] == 1,
        life_cycles=charge_discharge_status.data[3],
        remaining_capacity=from_raw_capacity_to_ah(BIG_ENDIAN_INT_STRUCT.unpack_from(charge_discharge_status.data, 4)[0]),
        charger_status=status_info.data[2] == 1,
        load_status=status_info.data[3] == 1,
        cycles=BIG_ENDIAN_SHORT_INT_STRUCT.unpack_from(status_info.data, 5)[0],
        cell_voltages=tuple(cell_voltages),
        soc_estimates=soc_estimates,
        errors=tuple(parse_failure_codes(failure_codes.data)),
    )


class DalyBms:
    """
    Session with one Daly BMS on its own serial port.

    The port is opened on construction and owned until close(). Only one command is in flight at a time, the caller must not
    use the same session from two threads at once.
    """

    def __init__(self, port: str, bms_id: BmsId, config: Config):
        self.port = port
        self.bms_id = bms_id
        self.cell_count = config.cell_count()
        self.host_address = config.get_int("HOST_ADDRESS", DEFAULT_HOST_ADDRESS)
        self.response_address = config.get_int("RESPONSE_ADDRESS", DEFAULT_RESPONSE_ADDRESS)
        self.max_retries = max(1, config.get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES))
        self.single_frame_timeout = config.get_float("SINGLE_FRAME_TIMEOUT_SECONDS", DEFAULT_SINGLE_FRAME_TIMEOUT_SECONDS)
        self.multi_frame_timeout = config.get_float("MULTI_FRAME_TIMEOUT_SECONDS", DEFAULT_MULTI_FRAME_TIMEOUT_SECONDS)

        self.ser = serial.Serial(port, baudrate=config.get_int("BAUD_RATE", 9600), timeout=self.single_frame_timeout)

        # discard whatever the driver buffered before we were connected
        try:
            stale = read_serial_bytes(self.ser, RX_BUFFER_SIZE, config.get_float("DRAIN_SECONDS", DEFAULT_DRAIN_SECONDS))
        except Exception:
            self.ser.close()
            raise
        if stale:
            logger.debug(f"{self.bms_id.bms_id} - Discarded {len(stale)} stale bytes")
        logger.info(f"{self.bms_id.bms_id} - Connected to {port}")

    def poll(self) -> Optional[BmsData]:
        """Read all values from the BMS. Returns None if the pack could not be read this time."""
        try:
            return self.read_data()
        except Exception:
            logger.exception(f"{self.bms_id.bms_id} - Could not read from {self.bms_id}")
            return None

    def read_data(self) -> BmsData:
        cell_voltages = assemble_cell_voltages(self.exchange(DalyCommand.CELL_VOLTAGES, multi_frame=True), self.cell_count)

        return parse_data(
            self.bms_id,
            self.exchange(DalyCommand.VOUT_IOUT_SOC)[0],
            self.exchange(DalyCommand.MIN_MAX_CELL_VOLTAGE)[0],
            self.exchange(DalyCommand.MIN_MAX_TEMPERATURE)[0],
            self.exchange(DalyCommand.DISCHARGE_CHARGE_MOS_STATUS)[0],
            self.exchange(DalyCommand.STATUS_INFO)[0],
            cell_voltages,
            self.exchange(DalyCommand.FAILURE_CODES)[0],
        )

    def write_soc(self, soc: int) -> bool:
        """Set the SoC on the BMS. The current local time is sent along, the BMS stores it with the new value."""
        try:
            responses = self.exchange(DalyCommand.WRITE_SOC, soc=soc)
        except DalyProtocolError:
            logger.exception(f"{self.bms_id.bms_id} - Couldn't set SOC to {soc}%")
            return False
        logger.info(f"{self.bms_id.bms_id} - Successfully set SOC to {soc}%")
        return len(responses) > 0

    def exchange(self, command: DalyCommand, multi_frame: bool = False, soc: Optional[int] = None) -> List[ResponseFrame]:
        """
        Send a command and return the valid response frames.

        A single frame command needs exactly one valid frame. The cell voltage command needs at least as many distinct frames
        as are required for the configured cell count. Every failed attempt sends the command again, after max_retries
        attempts ExchangeError is raised.
        """
        request = encode_command(command, self.host_address, soc)

        for attempt in range(self.max_retries):
            try:
                frames = self.send_request_and_read_frames(request, command, multi_frame)
            except serial.SerialException as e:
                logger.warning(f"{self.bms_id.bms_id} - Serial error for {command.name} on attempt {attempt + 1}: {e}")
                continue

            valid = [frame for frame in frames if frame.checksum_valid]
            if multi_frame:
                if len({frame.sequence_number for frame in valid}) >= required_cell_voltage_frames(self.cell_count):
                    return valid
            elif len(valid) == 1:
                return valid

            logger.debug(f"{self.bms_id.bms_id} - {command.name} attempt {attempt + 1} got {len(valid)} valid of {len(frames)} frames")

        raise ExchangeError(f"Could not read response(s) for {command.name} after {self.max_retries} attempts")

    def send_request_and_read_frames(self, request: bytes, command: DalyCommand, multi_frame: bool) -> List[ResponseFrame]:
        self.ser.reset_input_buffer()
        self.ser.write(request)
        self.ser.flush()
        logger.debug(f"{self.bms_id.bms_id} - Sent {command.name}: {request.hex(' ')}")

        if multi_frame:
            response = read_serial_bytes(self.ser, CELL_VOLTAGE_FRAMES * FRAME_LENGTH, self.multi_frame_timeout)
        else:
            response = read_serial_bytes(self.ser, FRAME_LENGTH, self.single_frame_timeout)
        logger.debug(f"{self.bms_id.bms_id} - Received {command.name}: {response.hex(' ')}")

        return decode_frames(response, command.value, self.response_address)

    def close(self) -> None:
        try:
            self.ser.close()
        except Exception:
            logger.exception(f"{self.bms_id.bms_id} - Could not close {self.port}")
