"""
Capability model shared by drivers, the registry and the API.
"""

from .models import (
    BrightnessCapability,
    Capability,
    CapabilityType,
    ColorTempCapability,
    EntityDescriptor,
    NumericCapability,
    OnOffCapability,
    RGBCapability,
    capability_bounds,
    dump_capability,
    parse_capability,
    validate_command_value,
)

__all__ = [
    "Capability",
    "CapabilityType",
    "NumericCapability",
    "BrightnessCapability",
    "ColorTempCapability",
    "RGBCapability",
    "OnOffCapability",
    "EntityDescriptor",
    "parse_capability",
    "dump_capability",
    "capability_bounds",
    "validate_command_value",
]
