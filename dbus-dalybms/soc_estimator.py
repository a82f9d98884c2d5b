# -*- coding: utf-8 -*-

# NOTES
# Voltage based SoC estimation for LiFePO4 cells.
# Table source: https://footprinthero.com/lifepo4-battery-voltage-charts
# The estimate is only used to cross-check the SoC reported by the BMS, it does not replace it.

from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class TableEntry:
    voltage: float
    soc: int
    # None: valid in both directions
    charging: Optional[bool] = None


# Ordered from high to low voltage
SOC_TABLE: List[TableEntry] = [
    TableEntry(3.65, 100, True),
    TableEntry(3.40, 100, False),
    TableEntry(3.35, 99),
    TableEntry(3.33, 90),
    TableEntry(3.30, 70),
    TableEntry(3.28, 40),
    TableEntry(3.25, 30),
    TableEntry(3.23, 20),
    TableEntry(3.20, 17),
    TableEntry(3.13, 14),
    TableEntry(3.00, 9),
    TableEntry(2.50, 0),
]


def estimate(cell_voltage: float, charging: bool, table: Sequence[TableEntry] = SOC_TABLE) -> float:
    """Estimate the SoC in percent of a single cell by linear interpolation between the two table rows around the voltage."""
    rows = [entry for entry in reversed(table) if entry.charging is None or entry.charging == charging]

    if cell_voltage <= rows[0].voltage:
        return 0.0
    if cell_voltage >= rows[-1].voltage:
        return 100.0

    for lower, upper in zip(rows, rows[1:]):
        if lower.voltage <= cell_voltage <= upper.voltage:
            percentage = (cell_voltage - lower.voltage) / (upper.voltage - lower.voltage)
            return lower.soc + (upper.soc - lower.soc) * percentage

    # unreachable with an ascending table
    raise ValueError(f"No table rows around {cell_voltage} V")


def estimate_average(cell_voltages: Sequence[float], charging: bool) -> float:
    if not cell_voltages:
        return 0.0
    return sum(estimate(voltage, charging) for voltage in cell_voltages) / len(cell_voltages)
