"""
UPS HAT Power Reader

Reads the INA219 current/voltage sensor of the Waveshare UPS HAT over I2C.
Only the register access lives here; deciding what a reading means is the
power monitor's job.

Current is negative while the board runs from its battery.
"""

from dataclasses import dataclass
from typing import Protocol

from smbus2 import SMBus

from ..common.exceptions import SensorError

# INA219 registers
REG_CONFIG = 0x00
REG_BUS_VOLTAGE = 0x02
REG_CURRENT = 0x04
REG_CALIBRATION = 0x05

DEFAULT_ADDRESS = 0x43
DEFAULT_BUS = 1

# 16V bus range, gain /2 (80mV), 12-bit 32-sample ADC for bus and shunt,
# shunt and bus continuous
CONFIG_VALUE = (0x00 << 13) | (0x01 << 11) | (0x0D << 7) | (0x0D << 3) | 0x07
CALIBRATION_VALUE = 26868
CURRENT_LSB_MA = 0.1524


@dataclass(frozen=True)
class PowerReading:
    current_ma: float
    bus_voltage_v: float


class PowerReader(Protocol):
    def read(self) -> PowerReading:
        """Raises SensorError when the sensor cannot be read."""
        ...


def battery_percentage(voltage: float, empty: float = 3.0, full: float = 4.2) -> float:
    """Linear estimate from the bus voltage, clamped to 0..100."""
    if full <= empty:
        raise ValueError("full voltage must be greater than empty voltage")
    percent = (voltage - empty) / (full - empty) * 100
    return max(0.0, min(100.0, percent))


class Ina219Reader:
    def __init__(self, bus: int = DEFAULT_BUS, address: int = DEFAULT_ADDRESS):
        self.address = address
        try:
            self._bus = SMBus(bus)
            self._write(REG_CALIBRATION, CALIBRATION_VALUE)
            self._write(REG_CONFIG, CONFIG_VALUE)
        except OSError as e:
            raise SensorError(f"cannot open INA219 at 0x{address:02x} on bus {bus}: {e}") from e

    def close(self) -> None:
        self._bus.close()

    def _read(self, register: int) -> int:
        high, low = self._bus.read_i2c_block_data(self.address, register, 2)
        return (high << 8) | low

    def _write(self, register: int, value: int) -> None:
        self._bus.write_i2c_block_data(self.address, register, [(value >> 8) & 0xFF, value & 0xFF])

    def read(self) -> PowerReading:
        try:
            # The chip can lose calibration on brown-out
            self._write(REG_CALIBRATION, CALIBRATION_VALUE)
            raw_voltage = self._read(REG_BUS_VOLTAGE)
            raw_current = self._read(REG_CURRENT)
        except OSError as e:
            raise SensorError(f"I2C read failed: {e}") from e

        if raw_current > 32767:
            raw_current -= 65535

        return PowerReading(
            current_ma=raw_current * CURRENT_LSB_MA,
            bus_voltage_v=(raw_voltage >> 3) * 0.004,
        )
