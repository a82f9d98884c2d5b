# -*- coding: utf-8 -*-
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Protection:
    """
    Alarm severities as understood by the Victron GX device.
    """

    OK = 0
    WARNING = 1
    ALARM = 2


class BmsStatus(Enum):
    STATIONARY = 0
    CHARGING = 1
    DISCHARGING = 2


@dataclass(frozen=True)
class BmsId:
    """Identifies one physical pack. Two identities are equal when bus id and logical id match, display name and capacity
    are informational only."""

    usb_id: str
    bms_id: str
    display_name: str = field(default="", compare=False)
    capacity: int = field(default=280, compare=False)  # Ah

    def __str__(self) -> str:
        return f"{self.bms_id} ({self.usb_id})"


@dataclass(frozen=True)
class BmsData:
    """One snapshot of a pack, created by a single successful poll. Never changed afterwards, the next poll replaces it."""

    bms_id: BmsId
    timestamp: datetime
    voltage: float
    current: float  # positive while charging
    soc: float
    avg_estimated_soc: float

    max_cell_voltage: float
    max_cell_number: int
    min_cell_voltage: float
    min_cell_number: int

    max_temp: int
    max_temp_cell_number: int
    min_temp: int
    min_temp_cell_number: int

    status: BmsStatus
    mosfet_charging: bool
    mosfet_discharging: bool

    life_cycles: int
    remaining_capacity: float  # Ah

    charger_status: bool
    load_status: bool

    cycles: int

    cell_voltages: Tuple[float, ...]
    soc_estimates: Tuple[float, ...]
    errors: Tuple[str, ...] = ()

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["status"] = self.status.name.lower()
        data["cell_voltages"] = list(self.cell_voltages)
        data["soc_estimates"] = list(self.soc_estimates)
        data["errors"] = list(self.errors)
        return data


@dataclass(frozen=True)
class ChargeParams:
    max_charge_voltage: float
    max_charge_current: float
    allow_to_charge: bool
    nr_of_modules_blocking_charge: int


@dataclass(frozen=True)
class DischargeParams:
    max_discharge_current: float
    allow_to_discharge: bool
    nr_of_modules_blocking_discharge: int


@dataclass(frozen=True)
class ControlDecision:
    charge: ChargeParams
    discharge: DischargeParams


@dataclass
class AggregateReport:
    """Values of the virtual battery, calculated from all packs that are online."""

    nr_of_cells_per_battery: int
    nr_of_modules_online: int
    nr_of_modules_offline: int

    capacity_remaining: float
    installed_capacity: int
    consumed_amphours: float
    soc: float
    estimated_soc: float
    voltage: float
    current: float
    power: float
    max_temperature: int
    min_temperature: int
    max_cell_voltage: float
    max_voltage_cell_id: str
    min_cell_voltage: float
    min_voltage_cell_id: str
    cell_delta: float
    charge_cycles: int
    min_battery_voltage: float

    control: Optional[ControlDecision] = None
    alarms: Dict[str, int] = field(default_factory=dict)
    bms_data: List[BmsData] = field(default_factory=list)
