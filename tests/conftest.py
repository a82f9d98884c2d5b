"""Shared test fixtures.

All serial timeouts are shrunk to a few milliseconds, so code that waits on a silent mock port returns at once.
"""

import pytest
from battery import BmsData, BmsId, BmsStatus
from datetime import datetime, timezone
from typing import Callable
from utils import Config

TEST_SETTINGS = {
    "CELL_COUNT": 16,
    "INTERVAL_SECONDS": 10,
    "OFFLINE_AFTER_SECONDS": 60,
    "POLL_JOIN_TIMEOUT_SECONDS": 5,
    "MAX_RETRIES": 3,
    "DRAIN_SECONDS": 0,
    "SINGLE_FRAME_TIMEOUT_SECONDS": 0.01,
    "MULTI_FRAME_TIMEOUT_SECONDS": 0.01,
    "HOST_ADDRESS": "0x40",
    "RESPONSE_ADDRESS": "0x01",
    "MAX_CHARGE_CURRENT": 210,
    "MIN_CHARGE_TEMP": 5,
    "MAX_CHARGE_TEMP": 45,
    "MAX_CELL_VOLTAGE_CHARGE": 3.4,
    "MAX_CELL_VOLTAGE_CUTOFF": 3.55,
    "MAX_DISCHARGE_CURRENT": 380,
    "MIN_DISCHARGE_TEMP": -10,
    "MAX_DISCHARGE_TEMP": 45,
    "MIN_CELL_VOLTAGE": 2.70,
    "MIN_DISCHARGE_SOC": 10,
    "VICTRON_PORTAL_ID": "c0619ab1b2c3",
    "MQTT_WRITE_ENABLED": True,
}

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> dict:
    return dict(TEST_SETTINGS)


@pytest.fixture
def config(settings: dict) -> Config:
    return Config.from_dict(settings)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_bms_data() -> Callable[..., BmsData]:
    """Factory for a healthy 16 cell pack snapshot. Any field can be overridden by keyword."""

    def make(bms_id: str = "pack1", usb_id: str = "1a86:7523", capacity: int = 280, **overrides) -> BmsData:
        values = dict(
            bms_id=BmsId(usb_id=usb_id, bms_id=bms_id, capacity=capacity),
            timestamp=NOW,
            voltage=53.2,
            current=10.0,
            soc=60.0,
            avg_estimated_soc=58.0,
            max_cell_voltage=3.33,
            max_cell_number=4,
            min_cell_voltage=3.31,
            min_cell_number=9,
            max_temp=25,
            max_temp_cell_number=1,
            min_temp=22,
            min_temp_cell_number=2,
            status=BmsStatus.CHARGING,
            mosfet_charging=True,
            mosfet_discharging=True,
            life_cycles=12,
            remaining_capacity=168.0,
            charger_status=True,
            load_status=False,
            cycles=12,
            cell_voltages=(3.32,) * 16,
            soc_estimates=(58.0,) * 16,
        )
        values.update(overrides)
        return BmsData(**values)

    return make
