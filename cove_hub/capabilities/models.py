"""
Capability model: the closed set of facets an entity can expose.

Every entity carries exactly one capability. Capabilities form a tagged
union discriminated by ``type``; adding a new device facet means adding a
variant here and handling it in ``capability_bounds``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class CapabilityType(str, Enum):
    """Discriminator values of the capability union."""
    NUMERIC = "numeric"
    BRIGHTNESS = "brightness"
    COLOR_TEMP = "color_temp"
    RGB = "rgb"
    ON_OFF = "on_off"


class _CapabilityBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def _check_pair(name_low: str, low: Optional[float], name_high: str, high: Optional[float]) -> None:
    if (low is None) != (high is None):
        raise ValueError(f"{name_low} and {name_high} must be given together")
    if low is not None and low > high:
        raise ValueError(f"{name_low} must not exceed {name_high}")


class NumericCapability(_CapabilityBase):
    """A measured or settable number, e.g. temperature or fan speed."""

    type: Literal["numeric"] = "numeric"
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    precision: Optional[int] = Field(default=None, ge=0, le=6)

    @model_validator(mode="after")
    def check_bounds(self) -> "NumericCapability":
        present = [v is not None for v in (self.min, self.max, self.step)]
        if any(present) and not all(present):
            raise ValueError("min, max and step must all be present or all absent")
        _check_pair("min", self.min, "max", self.max)
        if self.step is not None and self.step <= 0:
            raise ValueError("step must be positive")
        return self


class BrightnessCapability(_CapabilityBase):
    type: Literal["brightness"] = "brightness"
    unit: Optional[Literal["%", "lm"]] = None
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "BrightnessCapability":
        _check_pair("min", self.min, "max", self.max)
        return self


class ColorTempCapability(_CapabilityBase):
    type: Literal["color_temp"] = "color_temp"
    unit: Optional[Literal["mireds", "K"]] = None
    min_mireds: Optional[float] = None
    max_mireds: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "ColorTempCapability":
        _check_pair("min_mireds", self.min_mireds, "max_mireds", self.max_mireds)
        return self


class RGBCapability(_CapabilityBase):
    type: Literal["rgb"] = "rgb"


class OnOffCapability(_CapabilityBase):
    type: Literal["on_off"] = "on_off"


Capability = Annotated[
    Union[
        NumericCapability,
        BrightnessCapability,
        ColorTempCapability,
        RGBCapability,
        OnOffCapability,
    ],
    Field(discriminator="type"),
]

_capability_adapter = TypeAdapter(Capability)


def parse_capability(data: Any) -> Capability:
    """
    Build a capability from a dict or JSON string.

    Raises:
        pydantic.ValidationError: unknown type tag or invalid bounds
    """
    if isinstance(data, (str, bytes)):
        return _capability_adapter.validate_json(data)
    return _capability_adapter.validate_python(data)


def dump_capability(capability: Capability) -> dict[str, Any]:
    """Serialize a capability to a plain dict, omitting unset bounds."""
    return capability.model_dump(exclude_none=True)


def capability_bounds(capability: Capability) -> Optional[tuple[float, float]]:
    """Return the (min, max) range a capability declares, if any."""
    if isinstance(capability, NumericCapability):
        if capability.min is None:
            return None
        return (capability.min, capability.max)
    if isinstance(capability, BrightnessCapability):
        if capability.min is None:
            return None
        return (capability.min, capability.max)
    if isinstance(capability, ColorTempCapability):
        if capability.min_mireds is None:
            return None
        return (capability.min_mireds, capability.max_mireds)
    if isinstance(capability, (RGBCapability, OnOffCapability)):
        return None
    raise TypeError(f"Unhandled capability type: {type(capability).__name__}")


@dataclass
class EntityDescriptor:
    """An entity as reported by a protocol driver, before it is registered."""
    key: str
    capability: Capability
    name: Optional[str] = None
    unit: Optional[str] = None
    value: Any = None


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    return value


def _within(value: float, bounds: Optional[tuple[float, float]]) -> None:
    if bounds is not None and not bounds[0] <= value <= bounds[1]:
        raise ValueError(f"{value} is outside [{bounds[0]}, {bounds[1]}]")


def validate_command_value(capability: Capability, value: Any) -> Any:
    """
    Check a value to be sent to an entity against its capability.

    Returns the normalized value: a bool for on_off, a number for the
    ranged variants and an ``[r, g, b]`` list for rgb.

    Raises:
        ValueError: the value does not fit the capability
    """
    if isinstance(capability, OnOffCapability):
        if not isinstance(value, bool):
            raise ValueError(f"expected true or false, got {value!r}")
        return value

    if isinstance(capability, NumericCapability):
        number = _number(value)
        _within(number, capability_bounds(capability))
        if capability.step is not None:
            steps = (number - capability.min) / capability.step
            if abs(steps - round(steps)) > 1e-6:
                raise ValueError(f"{number} is not a multiple of step {capability.step} from {capability.min}")
        return number

    if isinstance(capability, BrightnessCapability):
        number = _number(value)
        if number < 0:
            raise ValueError("brightness must not be negative")
        _within(number, capability_bounds(capability))
        return number

    if isinstance(capability, ColorTempCapability):
        number = _number(value)
        if number <= 0:
            raise ValueError("color temperature must be positive")
        _within(number, capability_bounds(capability))
        return number

    if isinstance(capability, RGBCapability):
        if isinstance(value, dict):
            value = [value.get(c) for c in ("r", "g", "b")]
        if not isinstance(value, (list, tuple)) or len(value) != 3:
            raise ValueError("expected [r, g, b]")
        channels = []
        for channel in value:
            if isinstance(channel, bool) or not isinstance(channel, int) or not 0 <= channel <= 255:
                raise ValueError(f"rgb channels must be integers in [0, 255], got {channel!r}")
            channels.append(channel)
        return channels

    raise TypeError(f"Unhandled capability type: {type(capability).__name__}")
