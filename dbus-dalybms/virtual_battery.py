# -*- coding: utf-8 -*-

# NOTES
# Aggregates the data of all Daly packs into one virtual battery and sends it to the dbus-mqtt-services bridge on the GX
# device, which registers it as a battery service on dbus. The charge and discharge limits (DVCC) sent along are what the
# Victron system uses to control the chargers and inverters, so one pack that must not be charged blocks charging for all.

from battery import AggregateReport, BmsData, BmsId, ChargeParams, ControlDecision, DischargeParams, Protection
from bmsservice import BmsService
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from utils import DRIVER_VERSION, Config, logger
import threading

TOPIC = "W/dbus-mqtt-services"
SERVICE_NAME = "daly_bms_battery_1"

# (soc, max charge current) -> charge current to use
ChargeRamp = Callable[[float, float], float]


class WriteSocError(Exception):
    """Raised when a requested SoC could not be written to any pack."""


def no_ramp(soc: float, max_charge_current: float) -> float:
    return max_charge_current


def linear_soc_ramp(start_soc: float, end_soc: float, min_current: float) -> ChargeRamp:
    """Full current up to start_soc, then linearly down to min_current at end_soc and above."""

    def ramp(soc: float, max_charge_current: float) -> float:
        if soc <= start_soc or end_soc <= start_soc:
            return max_charge_current
        if soc >= end_soc:
            return min(min_current, max_charge_current)
        factor = (soc - start_soc) / (end_soc - start_soc)
        return max_charge_current - (max_charge_current - min(min_current, max_charge_current)) * factor

    return ramp


def charge_ramp_from_config(config: Config) -> ChargeRamp:
    if not config.get_bool("CHARGE_RAMP_ENABLED", False):
        return no_ramp
    return linear_soc_ramp(
        config.get_float("CHARGE_RAMP_START_SOC", 90),
        config.get_float("CHARGE_RAMP_END_SOC", 100),
        config.get_float("CHARGE_RAMP_MIN_CURRENT", 10),
    )


def round2d(value: float) -> float:
    return round(value, 2)


class VirtualBatteryService:
    def __init__(
        self,
        config: Config,
        publisher,
        bms_service: Optional[BmsService] = None,
        charge_ramp: Optional[ChargeRamp] = None,
    ):
        self.config = config
        self.publisher = publisher
        self.bms_service = bms_service
        self._charge_ramp = charge_ramp

        self.known_bms_data: Dict[BmsId, BmsData] = {}
        self._data_lock = threading.Lock()
        self._recompute_lock = threading.Lock()

        if bms_service is not None:
            bms_service.add_listener(self.on_bms_data)
        if hasattr(publisher, "add_listener"):
            publisher.add_listener(self.write_soc)

    @property
    def charge_ramp(self) -> ChargeRamp:
        return self._charge_ramp or charge_ramp_from_config(self.config)

    def write_soc(self, bms_id: str, soc: int) -> None:
        if self.bms_service is None or not self.bms_service.write_soc(bms_id, soc):
            raise WriteSocError(f"Could not write SoC {soc} to {bms_id}")

    def on_bms_data(self, bms_data: List[BmsData]) -> None:
        with self._data_lock:
            for data in bms_data:
                self.known_bms_data[data.bms_id] = data

        # a recompute already running will be followed by the next batch anyway
        if not self._recompute_lock.acquire(blocking=False):
            logger.debug("Recalculation already running, skipping")
            return
        try:
            self.republish_total()
        finally:
            self._recompute_lock.release()

    def partition(self, now: Optional[datetime] = None) -> Tuple[List[BmsData], List[BmsData]]:
        """Split the known packs into (online, offline) by the age of their last data."""
        now = now or datetime.now(timezone.utc)
        offline_after_seconds = self.config.get_float("OFFLINE_AFTER_SECONDS", 60)
        with self._data_lock:
            known = list(self.known_bms_data.values())
        online = [d for d in known if d.age_seconds(now) <= offline_after_seconds]
        offline = [d for d in known if d.age_seconds(now) > offline_after_seconds]
        return online, offline

    def republish_total(self, now: Optional[datetime] = None) -> Optional[AggregateReport]:
        online, offline = self.partition(now)

        if not online:
            logger.info("Cannot send data to Victron - no BMS data found")
            return None

        report = self.aggregate(online, offline)
        try:
            self.publisher.publish(TOPIC, self.to_dbus_service(report))
        except Exception:
            logger.exception("Could not publish virtual battery data")
        return report

    def aggregate(self, online: List[BmsData], offline: List[BmsData]) -> AggregateReport:
        cell_count = self.config.cell_count()

        capacity_remaining = round2d(sum(d.remaining_capacity for d in online))
        installed_capacity = sum(d.bms_id.capacity for d in online)
        soc = round2d(sum(d.soc for d in online) / len(online))
        voltage = round2d(sum(d.voltage for d in online) / len(online))
        current = round2d(sum(d.current for d in online))
        max_cell = max(online, key=lambda d: d.max_cell_voltage)
        min_cell = min(online, key=lambda d: d.min_cell_voltage)

        report = AggregateReport(
            nr_of_cells_per_battery=cell_count,
            nr_of_modules_online=len(online),
            nr_of_modules_offline=len(offline),
            capacity_remaining=capacity_remaining,
            installed_capacity=installed_capacity,
            consumed_amphours=round2d(installed_capacity - capacity_remaining),
            soc=soc,
            estimated_soc=round2d(sum(d.avg_estimated_soc for d in online) / len(online)),
            voltage=voltage,
            current=current,
            power=round2d(voltage * current),
            max_temperature=max(d.max_temp for d in online),
            min_temperature=min(d.min_temp for d in online),
            # cells of different packs share numbers, so the id names the pack too
            max_cell_voltage=max_cell.max_cell_voltage,
            max_voltage_cell_id=f"{max_cell.bms_id.bms_id} C{max_cell.max_cell_number}",
            min_cell_voltage=min_cell.min_cell_voltage,
            min_voltage_cell_id=f"{min_cell.bms_id.bms_id} C{min_cell.min_cell_number}",
            cell_delta=round(max_cell.max_cell_voltage - min_cell.min_cell_voltage, 3),
            charge_cycles=max(d.cycles for d in online),
            min_battery_voltage=round2d(min_cell.min_cell_voltage * cell_count),
            bms_data=online + offline,
        )
        report.control = ControlDecision(
            charge=self.calculate_charge_params(online, soc),
            discharge=self.calculate_discharge_params(online, soc),
        )
        report.alarms = self.calculate_alarms(report)
        return report

    def calculate_charge_params(self, online: List[BmsData], soc: float) -> ChargeParams:
        cell_count = self.config.cell_count()
        max_charge_current = self.config.get_float("MAX_CHARGE_CURRENT", 210)
        min_charge_temp = self.config.get_float("MIN_CHARGE_TEMP", 5)
        max_charge_temp = self.config.get_float("MAX_CHARGE_TEMP", 45)
        max_cell_voltage_cutoff = self.config.get_float("MAX_CELL_VOLTAGE_CUTOFF", 3.55)
        # the charge voltage at the charger must be somewhat higher because of the voltage drop on the cables,
        # which shrinks as the current goes down at the end of charging
        max_charge_voltage = round2d(self.config.get_float("MAX_CELL_VOLTAGE_CHARGE", 3.4) * cell_count)

        blocking = 0
        for bms in online:
            temp_ok = min_charge_temp <= bms.max_temp <= max_charge_temp
            charging_ok = bms.mosfet_charging
            cell_voltage_ok = bms.max_cell_voltage <= max_cell_voltage_cutoff
            if not (temp_ok and charging_ok and cell_voltage_ok):
                logger.warning(f"{bms.bms_id.bms_id} does not allow charging: temp_ok={temp_ok} charging_ok={charging_ok} cell_voltage_ok={cell_voltage_ok}")
                blocking += 1

        if blocking > 0:
            return ChargeParams(max_charge_voltage, 0.0, False, blocking)
        return ChargeParams(max_charge_voltage, round2d(self.charge_ramp(soc, max_charge_current)), True, 0)

    def calculate_discharge_params(self, online: List[BmsData], soc: float) -> DischargeParams:
        max_discharge_current = self.config.get_float("MAX_DISCHARGE_CURRENT", 380)
        min_cell_voltage = self.config.get_float("MIN_CELL_VOLTAGE", 2.70)
        min_discharge_temp = self.config.get_float("MIN_DISCHARGE_TEMP", -10)
        max_discharge_temp = self.config.get_float("MAX_DISCHARGE_TEMP", 45)
        min_discharge_soc = self.config.get_float("MIN_DISCHARGE_SOC", 10)

        blocking = 0
        for bms in online:
            temp_ok = min_discharge_temp <= bms.max_temp <= max_discharge_temp
            discharging_ok = bms.mosfet_discharging
            cell_voltage_ok = bms.min_cell_voltage >= min_cell_voltage
            soc_ok = soc > min_discharge_soc
            if not (temp_ok and discharging_ok and cell_voltage_ok and soc_ok):
                logger.warning(
                    f"{bms.bms_id.bms_id} does not allow discharging: "
                    f"temp_ok={temp_ok} discharging_ok={discharging_ok} cell_voltage_ok={cell_voltage_ok} soc_ok={soc_ok}"
                )
                blocking += 1

        if blocking > 0:
            return DischargeParams(0.0, False, blocking)
        return DischargeParams(max_discharge_current, True, 0)

    def cell_imbalance_threshold(self, soc: float) -> float:
        """Allowed cell voltage spread. Cells of LiFePO4 packs drift apart near empty and full, so the band is wider there."""
        if self.config.get_float("CELL_IMBALANCE_MID_SOC_MIN", 30) < soc < self.config.get_float("CELL_IMBALANCE_MID_SOC_MAX", 90):
            return self.config.get_float("CELL_IMBALANCE_MID_THRESHOLD", 0.2)
        return self.config.get_float("CELL_IMBALANCE_EXTREME_THRESHOLD", 0.4)

    def calculate_alarms(self, report: AggregateReport) -> Dict[str, int]:
        def alarm(active: bool) -> int:
            return Protection.ALARM if active else Protection.OK

        high_temperature = alarm(report.max_temperature > self.config.get_float("ALARM_HIGH_TEMPERATURE", 40))
        low_temperature = alarm(report.min_temperature < self.config.get_float("ALARM_LOW_TEMPERATURE", 10))
        offline = alarm(report.nr_of_modules_offline > 0)

        return {
            "/Alarms/LowVoltage": alarm(report.voltage < self.config.get_float("ALARM_LOW_VOLTAGE", 44.8)),
            "/Alarms/HighVoltage": alarm(report.voltage > self.config.get_float("ALARM_HIGH_VOLTAGE", 56.0)),
            "/Alarms/LowCellVoltage": alarm(report.min_cell_voltage < self.config.get_float("ALARM_LOW_CELL_VOLTAGE", 2.8)),
            "/Alarms/HighCellVoltage": alarm(report.max_cell_voltage > self.config.get_float("ALARM_HIGH_CELL_VOLTAGE", 3.4)),
            "/Alarms/LowSoc": alarm(report.soc < self.config.get_float("ALARM_LOW_SOC", 10)),
            "/Alarms/CellImbalance": alarm(report.cell_delta > self.cell_imbalance_threshold(report.soc)),
            "/Alarms/HighChargeTemperature": high_temperature,
            "/Alarms/LowChargeTemperature": low_temperature,
            "/Alarms/HighTemperature": high_temperature,
            "/Alarms/LowTemperature": low_temperature,
            "/Alarms/Alarm": offline,
            "/Alarms/InternalFailure": offline,
        }

    def to_dbus_service(self, report: AggregateReport) -> dict:
        """Render the report in the format expected by dbus-mqtt-services."""
        charge = report.control.charge
        discharge = report.control.discharge

        def dbus_data(path: str, value, value_type: str = "string", writeable: bool = False) -> dict:
            return {"path": path, "value": "" if value is None else str(value), "valueType": value_type, "writeable": writeable}

        dbus_values = [
            dbus_data("/Mgmt/ProcessName", "Daly Bms Bridge"),
            dbus_data("/Mgmt/ProcessVersion", DRIVER_VERSION),
            dbus_data("/Mgmt/Connection", "Serial Uart Daly"),
            dbus_data("/ProductId", 0, "integer"),
            dbus_data("/ProductName", "Daly Bms service"),
            dbus_data("/FirmwareVersion", DRIVER_VERSION),
            dbus_data("/HardwareVersion", DRIVER_VERSION),
            dbus_data("/Connected", 1, "integer"),
            dbus_data("/CustomName", "Daly Bms service", writeable=True),
            dbus_data("/Info/BatteryLowVoltage", report.min_battery_voltage, "float"),
            # DVCC
            dbus_data("/Info/MaxChargeVoltage", charge.max_charge_voltage, "float"),
            dbus_data("/Info/MaxChargeCurrent", charge.max_charge_current, "float"),
            dbus_data("/Info/MaxDischargeCurrent", discharge.max_discharge_current, "float"),
            dbus_data("/Io/AllowToCharge", int(charge.allow_to_charge), "integer"),
            dbus_data("/Io/AllowToDischarge", int(discharge.allow_to_discharge), "integer"),
            dbus_data("/System/NrOfCellsPerBattery", report.nr_of_cells_per_battery, "integer"),
            dbus_data("/System/NrOfModulesOnline", report.nr_of_modules_online, "integer"),
            dbus_data("/System/NrOfModulesOffline", report.nr_of_modules_offline, "integer"),
            dbus_data("/System/NrOfModulesBlockingCharge", charge.nr_of_modules_blocking_charge, "integer"),
            dbus_data("/System/NrOfModulesBlockingDischarge", discharge.nr_of_modules_blocking_discharge, "integer"),
            dbus_data("/Capacity", report.capacity_remaining, "float"),
            dbus_data("/InstalledCapacity", report.installed_capacity, "integer"),
            dbus_data("/ConsumedAmphours", report.consumed_amphours, "float"),
            dbus_data("/Soc", report.soc, "float"),
            dbus_data("/SocEstimated", report.estimated_soc, "float"),
            dbus_data("/Dc/0/Voltage", report.voltage, "float"),
            dbus_data("/Dc/0/Current", report.current, "float"),
            dbus_data("/Dc/0/Power", report.power, "float"),
            dbus_data("/Dc/0/Temperature", report.max_temperature, "float"),
            dbus_data("/System/MinCellTemperature", report.min_temperature, "float"),
            dbus_data("/System/MaxCellTemperature", report.max_temperature, "float"),
            dbus_data("/System/MaxCellVoltage", report.max_cell_voltage, "float"),
            dbus_data("/System/MaxVoltageCellId", report.max_voltage_cell_id),
            dbus_data("/System/MinCellVoltage", report.min_cell_voltage, "float"),
            dbus_data("/System/MinVoltageCellId", report.min_voltage_cell_id),
            dbus_data("/History/ChargeCycles", report.charge_cycles, "integer"),
            dbus_data("/Balancing", 0, "integer"),
            dbus_data("/Alarms/HighChargeCurrent", None, "none"),
            dbus_data("/Alarms/HighDischargeCurrent", None, "none"),
        ]
        dbus_values += [dbus_data(path, value, "integer") for path, value in report.alarms.items()]

        return {
            "service": SERVICE_NAME,
            "serviceType": "battery",
            "serviceInstance": 0,
            "dbus_data": dbus_values,
            "bmsData": [d.to_dict() for d in report.bms_data],
        }
