# sitetelemetry/units.py
# Unit conversion tables, canonical units and expected ranges per stream type.
# Canonical values are what we store; ranges are expressed in canonical units.

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Tuple


class Unit(StrEnum):
    DEGREES_FAHRENHEIT = "degf"
    DEGREES_CELSIUS = "degc"
    KELVIN = "k"
    PERCENT = "pct"
    PARTS_PER_MILLION = "ppm"
    PARTS_PER_BILLION = "ppb"
    MILLIGRAMS_PER_LITER = "mg_l"
    KILOPASCALS = "kpa"
    PSI = "psi"
    BAR = "bar"
    MICROMOLES = "umol"
    LUX = "lux"
    FOOTCANDLES = "footcandles"
    MICROSIEMENS = "us"
    MILLISIEMENS_PER_CM = "ms_cm"
    PH = "ph"
    LITERS = "l"
    MILLILITERS = "ml"
    GALLONS = "gal"
    GALLONS_PER_MINUTE = "gpm"
    LITERS_PER_MINUTE = "lpm"
    GALLONS_PER_HOUR = "gph"
    LITERS_PER_HOUR = "lph"
    INCHES = "in"
    CENTIMETERS = "cm"
    FEET = "ft"
    METERS = "m"
    WATTS = "w"
    KILOWATTS = "kw"
    HORSEPOWER = "hp"
    KILOWATT_HOURS = "kwh"
    WATT_HOURS = "wh"
    JOULES = "joules"
    COUNT = "count"


class StreamType(StrEnum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    CO2 = "co2"
    VPD = "vpd"
    LIGHT_PAR = "light_par"
    LIGHT_PPFD = "light_ppfd"
    EC = "ec"
    PH = "ph"
    DISSOLVED_OXYGEN = "dissolved_oxygen"
    WATER_TEMP = "water_temp"
    WATER_LEVEL = "water_level"
    SOIL_MOISTURE = "soil_moisture"
    SOIL_TEMP = "soil_temp"
    SOIL_EC = "soil_ec"
    PRESSURE = "pressure"
    FLOW_RATE = "flow_rate"
    FLOW_TOTAL = "flow_total"
    POWER_CONSUMPTION = "power_consumption"
    ENERGY_CONSUMPTION = "energy_consumption"
    GENERIC = "generic"


GAL_TO_L = 3.78541
PSI_TO_KPA = 6.89476
BAR_TO_PSI = 14.5038
HP_TO_W = 745.7

Converter = Callable[[float], float]

# (source, target) -> formula
CONVERSIONS: dict[Tuple[Unit, Unit], Converter] = {
    # temperature
    (Unit.DEGREES_FAHRENHEIT, Unit.DEGREES_CELSIUS): lambda v: (v - 32) * 5 / 9,
    (Unit.DEGREES_CELSIUS, Unit.DEGREES_FAHRENHEIT): lambda v: v * 9 / 5 + 32,
    (Unit.DEGREES_CELSIUS, Unit.KELVIN): lambda v: v + 273.15,
    (Unit.KELVIN, Unit.DEGREES_CELSIUS): lambda v: v - 273.15,
    (Unit.KELVIN, Unit.DEGREES_FAHRENHEIT): lambda v: (v - 273.15) * 9 / 5 + 32,
    (Unit.DEGREES_FAHRENHEIT, Unit.KELVIN): lambda v: (v - 32) * 5 / 9 + 273.15,
    # pressure
    (Unit.PSI, Unit.KILOPASCALS): lambda v: v * PSI_TO_KPA,
    (Unit.KILOPASCALS, Unit.PSI): lambda v: v / PSI_TO_KPA,
    (Unit.BAR, Unit.PSI): lambda v: v * BAR_TO_PSI,
    (Unit.PSI, Unit.BAR): lambda v: v / BAR_TO_PSI,
    (Unit.BAR, Unit.KILOPASCALS): lambda v: v * 100,
    (Unit.KILOPASCALS, Unit.BAR): lambda v: v / 100,
    # volume
    (Unit.GALLONS, Unit.LITERS): lambda v: v * GAL_TO_L,
    (Unit.LITERS, Unit.GALLONS): lambda v: v / GAL_TO_L,
    (Unit.MILLILITERS, Unit.LITERS): lambda v: v / 1000,
    (Unit.LITERS, Unit.MILLILITERS): lambda v: v * 1000,
    # flow
    (Unit.GALLONS_PER_MINUTE, Unit.LITERS_PER_MINUTE): lambda v: v * GAL_TO_L,
    (Unit.LITERS_PER_MINUTE, Unit.GALLONS_PER_MINUTE): lambda v: v / GAL_TO_L,
    (Unit.GALLONS_PER_HOUR, Unit.LITERS_PER_HOUR): lambda v: v * GAL_TO_L,
    (Unit.LITERS_PER_HOUR, Unit.GALLONS_PER_HOUR): lambda v: v / GAL_TO_L,
    # distance
    (Unit.INCHES, Unit.CENTIMETERS): lambda v: v * 2.54,
    (Unit.CENTIMETERS, Unit.INCHES): lambda v: v / 2.54,
    (Unit.FEET, Unit.METERS): lambda v: v * 0.3048,
    (Unit.METERS, Unit.FEET): lambda v: v / 0.3048,
    # power
    (Unit.KILOWATTS, Unit.WATTS): lambda v: v * 1000,
    (Unit.WATTS, Unit.KILOWATTS): lambda v: v / 1000,
    (Unit.HORSEPOWER, Unit.WATTS): lambda v: v * HP_TO_W,
    (Unit.WATTS, Unit.HORSEPOWER): lambda v: v / HP_TO_W,
    # energy
    (Unit.KILOWATT_HOURS, Unit.WATT_HOURS): lambda v: v * 1000,
    (Unit.WATT_HOURS, Unit.KILOWATT_HOURS): lambda v: v / 1000,
    # conductivity
    (Unit.MILLISIEMENS_PER_CM, Unit.MICROSIEMENS): lambda v: v * 1000,
    (Unit.MICROSIEMENS, Unit.MILLISIEMENS_PER_CM): lambda v: v / 1000,
}

CANONICAL_UNITS: dict[StreamType, Unit] = {
    StreamType.TEMPERATURE: Unit.DEGREES_FAHRENHEIT,
    StreamType.HUMIDITY: Unit.PERCENT,
    StreamType.CO2: Unit.PARTS_PER_MILLION,
    StreamType.VPD: Unit.KILOPASCALS,
    StreamType.LIGHT_PAR: Unit.MICROMOLES,
    StreamType.LIGHT_PPFD: Unit.MICROMOLES,
    StreamType.EC: Unit.MICROSIEMENS,
    StreamType.PH: Unit.PH,
    StreamType.DISSOLVED_OXYGEN: Unit.MILLIGRAMS_PER_LITER,
    StreamType.WATER_TEMP: Unit.DEGREES_FAHRENHEIT,
    StreamType.WATER_LEVEL: Unit.LITERS,
    StreamType.SOIL_MOISTURE: Unit.PERCENT,
    StreamType.SOIL_TEMP: Unit.DEGREES_FAHRENHEIT,
    StreamType.SOIL_EC: Unit.MICROSIEMENS,
    StreamType.PRESSURE: Unit.PSI,
    StreamType.FLOW_RATE: Unit.GALLONS_PER_MINUTE,
    StreamType.FLOW_TOTAL: Unit.GALLONS,
    StreamType.POWER_CONSUMPTION: Unit.WATTS,
    StreamType.ENERGY_CONSUMPTION: Unit.KILOWATT_HOURS,
}

# (min, max) inclusive, in the canonical unit
EXPECTED_RANGES: dict[StreamType, Tuple[float, float]] = {
    StreamType.TEMPERATURE: (-50, 150),
    StreamType.HUMIDITY: (0, 100),
    StreamType.CO2: (0, 5000),
    StreamType.VPD: (0, 5),
    StreamType.LIGHT_PAR: (0, 3000),
    StreamType.LIGHT_PPFD: (0, 3000),
    StreamType.EC: (0, 10000),
    StreamType.PH: (0, 14),
    StreamType.DISSOLVED_OXYGEN: (0, 50),
    StreamType.WATER_TEMP: (32, 120),
    StreamType.WATER_LEVEL: (0, 10000),
    StreamType.SOIL_MOISTURE: (0, 100),
    StreamType.SOIL_TEMP: (32, 120),
    StreamType.SOIL_EC: (0, 10000),
    StreamType.PRESSURE: (0, 200),
    StreamType.FLOW_RATE: (0, 1000),
    StreamType.FLOW_TOTAL: (0, 1_000_000),
    StreamType.POWER_CONSUMPTION: (0, 100_000),
    StreamType.ENERGY_CONSUMPTION: (0, 100_000),
}

# Device payload label -> unit. Enum values are accepted as well.
UNIT_ALIASES: dict[str, Unit] = {
    "degf": Unit.DEGREES_FAHRENHEIT,
    "fahrenheit": Unit.DEGREES_FAHRENHEIT,
    "degc": Unit.DEGREES_CELSIUS,
    "celsius": Unit.DEGREES_CELSIUS,
    "k": Unit.KELVIN,
    "kelvin": Unit.KELVIN,
    "pct": Unit.PERCENT,
    "percent": Unit.PERCENT,
    "ppm": Unit.PARTS_PER_MILLION,
    "ppb": Unit.PARTS_PER_BILLION,
    "mg_l": Unit.MILLIGRAMS_PER_LITER,
    "mg/l": Unit.MILLIGRAMS_PER_LITER,
    "kpa": Unit.KILOPASCALS,
    "psi": Unit.PSI,
    "bar": Unit.BAR,
    "umol": Unit.MICROMOLES,
    "lux": Unit.LUX,
    "footcandles": Unit.FOOTCANDLES,
    "us": Unit.MICROSIEMENS,
    "microsiemens": Unit.MICROSIEMENS,
    "ms_cm": Unit.MILLISIEMENS_PER_CM,
    "ph": Unit.PH,
    "l": Unit.LITERS,
    "liter": Unit.LITERS,
    "liters": Unit.LITERS,
    "ml": Unit.MILLILITERS,
    "gal": Unit.GALLONS,
    "gallon": Unit.GALLONS,
    "gallons": Unit.GALLONS,
    "gpm": Unit.GALLONS_PER_MINUTE,
    "lpm": Unit.LITERS_PER_MINUTE,
    "gph": Unit.GALLONS_PER_HOUR,
    "lph": Unit.LITERS_PER_HOUR,
    "in": Unit.INCHES,
    "cm": Unit.CENTIMETERS,
    "ft": Unit.FEET,
    "m": Unit.METERS,
    "w": Unit.WATTS,
    "kw": Unit.KILOWATTS,
    "hp": Unit.HORSEPOWER,
    "kwh": Unit.KILOWATT_HOURS,
    "wh": Unit.WATT_HOURS,
    "joules": Unit.JOULES,
}


class UnsupportedConversion(Exception):
    def __init__(self, source: Unit, target: Unit):
        super().__init__(f"Conversion from {source} to {target} is not supported")
        self.source = source
        self.target = target


@dataclass(frozen=True)
class UnitCatalog:
    """Read-only view over the conversion, canonical-unit and range tables.

    Built once at startup and handed to whatever needs it; nothing mutates it.
    """

    conversions: Mapping[Tuple[Unit, Unit], Converter] = field(
        default_factory=lambda: MappingProxyType(dict(CONVERSIONS))
    )
    canonical_units: Mapping[StreamType, Unit] = field(
        default_factory=lambda: MappingProxyType(dict(CANONICAL_UNITS))
    )
    expected_ranges: Mapping[StreamType, Tuple[float, float]] = field(
        default_factory=lambda: MappingProxyType(dict(EXPECTED_RANGES))
    )
    aliases: Mapping[str, Unit] = field(
        default_factory=lambda: MappingProxyType(dict(UNIT_ALIASES))
    )

    def supports(self, source: Unit, target: Unit) -> bool:
        return source == target or (source, target) in self.conversions

    def convert(self, value: float, source: Unit, target: Unit) -> float:
        if source == target:
            return value
        formula = self.conversions.get((source, target))
        if formula is None:
            raise UnsupportedConversion(source, target)
        return formula(value)

    def canonical_unit(self, stream_type: StreamType) -> Unit:
        return self.canonical_units.get(stream_type, Unit.COUNT)

    def expected_range(self, stream_type: StreamType) -> Tuple[float, float]:
        # permissive when the stream type has no range on file
        return self.expected_ranges.get(stream_type, (float("-inf"), float("inf")))

    def parse_unit_code(self, code: Optional[str]) -> Optional[Unit]:
        """
        Map a device unit label ('degF', 'Celsius', 'mg/L', 'ms_cm') to a Unit.
        Returns None for blank or unknown codes.
        """
        if not code or not code.strip():
            return None
        key = code.strip().lower()
        unit = self.aliases.get(key)
        if unit is not None:
            return unit
        try:
            return Unit(key)
        except ValueError:
            pass
        try:
            return Unit[code.strip().upper()]
        except KeyError:
            return None


DEFAULT_CATALOG = UnitCatalog()
