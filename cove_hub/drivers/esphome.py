"""
ESPHome native API driver.

ESPHome nodes have no commissioning step: pairing only records the optional
noise pre-shared key, and the session is opened on connect. Wire framing
lives behind ESPHomeTransport so a full codec can be plugged in.
"""

import asyncio
import base64
import binascii
import logging
import struct
from collections import deque
from typing import Any, Optional, Protocol, runtime_checkable

from ..capabilities import (
    BrightnessCapability,
    ColorTempCapability,
    EntityDescriptor,
    NumericCapability,
    OnOffCapability,
    RGBCapability,
)
from ..exceptions import (
    AlreadyConnected,
    AuthError,
    CommandError,
    DriverConnectionError,
    HubError,
    PairingError,
)
from .base import DriverContext, PairingResult, ProtocolDriver

logger = logging.getLogger("cove.hub.drivers.esphome")

# ESPHome ColorMode bits
COLOR_MODE_BRIGHTNESS = 1 << 1
COLOR_MODE_COLOR_TEMPERATURE = 1 << 3
COLOR_MODE_COLD_WARM_WHITE = 1 << 4
COLOR_MODE_RGB = 1 << 5

# Native API message types
HELLO_REQUEST = 1
HELLO_RESPONSE = 2
DISCONNECT_REQUEST = 5
DISCONNECT_RESPONSE = 6
PING_REQUEST = 7
PING_RESPONSE = 8
LIGHT_COMMAND_REQUEST = 32
SWITCH_COMMAND_REQUEST = 33
NUMBER_COMMAND_REQUEST = 51

PSK_LENGTH = 32


def decode_encryption_key(value: Any) -> bytes:
    """
    Decode a base64 noise PSK.

    Raises:
        ValueError: not base64 or not 32 bytes
    """
    if not isinstance(value, str) or not value:
        raise ValueError("encryption key must be a base64 string")
    try:
        key = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"encryption key is not valid base64: {e}") from e
    if len(key) != PSK_LENGTH:
        raise ValueError(f"encryption key must decode to {PSK_LENGTH} bytes, got {len(key)}")
    return key


@runtime_checkable
class ESPHomeTransport(Protocol):
    """Session with one ESPHome node."""

    @property
    def is_open(self) -> bool:
        ...

    async def open(self, host: str, port: int, encryption_key: Optional[bytes]) -> dict[str, Any]:
        """Open the session and return the node's hello information."""
        ...

    async def close(self) -> None:
        ...

    async def list_entities(self) -> list[dict[str, Any]]:
        """Raw entity records (snake_case ESPHome field names)."""
        ...

    async def ping(self) -> None:
        """Round-trip a ping to the node."""
        ...

    async def send_command(self, command: dict[str, Any]) -> None:
        """Send an entity command (see encode_command for the fields)."""
        ...


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


async def _read_varint(reader: asyncio.StreamReader) -> int:
    result = 0
    shift = 0
    while True:
        byte = (await reader.readexactly(1))[0]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result
        shift += 7


def _varint_at(payload: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        byte = payload[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _decode_fields(payload: bytes) -> dict[int, Any]:
    """Minimal protobuf decode of varint and length-delimited fields."""
    fields: dict[int, Any] = {}
    pos = 0
    while pos < len(payload):
        tag, pos = _varint_at(payload, pos)
        number, wire_type = tag >> 3, tag & 0x7
        if wire_type == 0:
            fields[number], pos = _varint_at(payload, pos)
        elif wire_type == 2:
            length, pos = _varint_at(payload, pos)
            fields[number] = payload[pos:pos + length]
            pos += length
        else:
            # Fixed-width fields are not used by the hello exchange
            break
    return fields


def _tag(number: int, wire_type: int) -> bytes:
    return _encode_varint(number << 3 | wire_type)


def _bool_field(number: int, value: bool) -> bytes:
    return _tag(number, 0) + _encode_varint(1 if value else 0)


def _float_field(number: int, value: float) -> bytes:
    return _tag(number, 5) + struct.pack("<f", value)


def encode_command(command: dict[str, Any]) -> tuple[int, bytes]:
    """
    Encode an entity command as (message type, protobuf payload).

    ``command`` carries the numeric entity ``key`` and a ``type`` of switch,
    number or light. Switch and number take ``state``. Lights take any of
    ``state``, ``brightness`` (0..1), ``color_temperature`` (mireds) and
    ``rgb`` (three floats 0..1).
    """
    payload = _tag(1, 5) + struct.pack("<I", command["key"])
    kind = command["type"]
    if kind == "switch":
        return SWITCH_COMMAND_REQUEST, payload + _bool_field(2, command["state"])
    if kind == "number":
        return NUMBER_COMMAND_REQUEST, payload + _float_field(2, command["state"])
    if kind == "light":
        if "state" in command:
            payload += _bool_field(2, True) + _bool_field(3, command["state"])
        if "brightness" in command:
            payload += _bool_field(4, True) + _float_field(5, command["brightness"])
        if "rgb" in command:
            red, green, blue = command["rgb"]
            payload += _bool_field(6, True) + _float_field(7, red) + _float_field(8, green) + _float_field(9, blue)
        if "color_temperature" in command:
            payload += _bool_field(12, True) + _float_field(13, command["color_temperature"])
        return LIGHT_COMMAND_REQUEST, payload
    raise ValueError(f"unsupported command type: {kind}")


class TCPNativeAPITransport:
    """
    Plaintext native API session over TCP.

    Performs the hello exchange so reachability and protocol compatibility
    are verified, then keeps a reader running that answers the node's pings
    and notices when the node goes away. Noise-encrypted sessions and entity
    listing need a codec transport.
    """

    def __init__(self, client_info: str = "cove-hub", timeout: float = 5.0):
        self._client_info = client_info
        self._timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pongs: deque[asyncio.Future] = deque()

    @property
    def is_open(self) -> bool:
        if self._writer is None or self._writer.is_closing():
            return False
        return self._read_task is not None and not self._read_task.done()

    async def open(self, host: str, port: int, encryption_key: Optional[bytes]) -> dict[str, Any]:
        if encryption_key is not None:
            raise DriverConnectionError(host, "encrypted sessions require a noise codec transport")

        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=self._timeout
        )
        try:
            client_info = self._client_info.encode("utf-8")
            payload = b"\x0a" + _encode_varint(len(client_info)) + client_info
            await self._send(HELLO_REQUEST, payload)
            msg_type, response = await asyncio.wait_for(self._receive(), timeout=self._timeout)
        except BaseException:
            await self.close()
            raise

        if msg_type != HELLO_RESPONSE:
            await self.close()
            raise DriverConnectionError(host, f"unexpected message type {msg_type} during hello")

        fields = _decode_fields(response)
        self._read_task = asyncio.create_task(self._read_loop(self._reader, self._writer))
        return {
            "api_version_major": fields.get(1, 0),
            "api_version_minor": fields.get(2, 0),
            "server_info": fields.get(3, b"").decode("utf-8", errors="ignore"),
            "name": fields.get(4, b"").decode("utf-8", errors="ignore"),
        }

    async def _send(self, msg_type: int, payload: bytes) -> None:
        frame = b"\x00" + _encode_varint(len(payload)) + _encode_varint(msg_type) + payload
        self._writer.write(frame)
        await self._writer.drain()

    async def _receive(self) -> tuple[int, bytes]:
        return await self._receive_from(self._reader)

    @staticmethod
    async def _receive_from(reader: asyncio.StreamReader) -> tuple[int, bytes]:
        preamble = (await reader.readexactly(1))[0]
        if preamble == 0x01:
            raise AuthError("esphome", "node requires an encryption key")
        if preamble != 0x00:
            raise DriverConnectionError("esphome", f"invalid frame preamble {preamble:#x}")
        length = await _read_varint(reader)
        msg_type = await _read_varint(reader)
        payload = await reader.readexactly(length) if length else b""
        return msg_type, payload

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                msg_type, _ = await self._receive_from(reader)
                if msg_type == PING_REQUEST:
                    await self._send_raw(writer, PING_RESPONSE)
                elif msg_type == PING_RESPONSE:
                    if self._pongs:
                        waiter = self._pongs.popleft()
                        if not waiter.done():
                            waiter.set_result(None)
                elif msg_type == DISCONNECT_REQUEST:
                    logger.info("Node closed the native API session")
                    await self._send_raw(writer, DISCONNECT_RESPONSE)
                    break
                else:
                    logger.debug("Ignoring native API message type %d", msg_type)
        except asyncio.IncompleteReadError:
            logger.info("Native API session closed by the node")
        except (OSError, HubError) as e:
            logger.warning("Native API session dropped: %s", e)
        finally:
            writer.close()
            self._fail_pongs(ConnectionResetError("native API session closed"))

    def _fail_pongs(self, error: Exception) -> None:
        while self._pongs:
            waiter = self._pongs.popleft()
            if not waiter.done():
                waiter.set_exception(error)

    async def ping(self) -> None:
        if not self.is_open:
            raise ConnectionResetError("native API session closed")
        waiter = asyncio.get_running_loop().create_future()
        self._pongs.append(waiter)
        await self._send(PING_REQUEST, b"")
        await asyncio.wait_for(waiter, timeout=self._timeout)

    async def send_command(self, command: dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionResetError("native API session closed")
        await self._send(*encode_command(command))

    async def close(self) -> None:
        task, self._read_task = self._read_task, None
        writer, self._writer, self._reader = self._writer, None, None
        try:
            if writer is not None and not writer.is_closing():
                await self._send_raw(writer, DISCONNECT_REQUEST)
        except OSError as e:
            logger.debug("Error sending native API disconnect: %s", e)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pongs(ConnectionResetError("native API session closed"))
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Error closing native API session: %s", e)

    @staticmethod
    async def _send_raw(writer: asyncio.StreamWriter, msg_type: int) -> None:
        writer.write(b"\x00" + _encode_varint(0) + _encode_varint(msg_type))
        await writer.drain()

    async def list_entities(self) -> list[dict[str, Any]]:
        logger.debug("Plaintext transport does not decode entity listings")
        return []


def entities_from_esphome(raw: dict[str, Any]) -> list[EntityDescriptor]:
    """Map one raw ESPHome entity record to hub entities."""
    entity_type = raw.get("type")
    key = str(raw.get("object_id") or raw.get("key"))
    name = raw.get("name")

    if entity_type == "sensor":
        decimals = raw.get("accuracy_decimals")
        unit = raw.get("unit_of_measurement") or None
        return [
            EntityDescriptor(
                key=key,
                name=name,
                unit=unit,
                capability=NumericCapability(
                    unit=unit,
                    precision=min(max(decimals, 0), 6) if decimals is not None else None,
                ),
            )
        ]

    if entity_type == "number":
        unit = raw.get("unit_of_measurement") or None
        bounds = (raw.get("min_value"), raw.get("max_value"), raw.get("step"))
        if None in bounds:
            bounds = (None, None, None)
        return [
            EntityDescriptor(
                key=key,
                name=name,
                unit=unit,
                capability=NumericCapability(unit=unit, min=bounds[0], max=bounds[1], step=bounds[2]),
            )
        ]

    if entity_type in ("switch", "binary_sensor"):
        return [EntityDescriptor(key=key, name=name, capability=OnOffCapability())]

    if entity_type == "light":
        modes = 0
        for mode in raw.get("supported_color_modes") or []:
            modes |= mode
        descriptors = [EntityDescriptor(key=key, name=name, capability=OnOffCapability())]
        if modes & COLOR_MODE_BRIGHTNESS or raw.get("legacy_supports_brightness"):
            descriptors.append(
                EntityDescriptor(
                    key=f"{key}_brightness",
                    name=name,
                    unit="%",
                    capability=BrightnessCapability(unit="%", min=0, max=100),
                )
            )
        if modes & (COLOR_MODE_COLOR_TEMPERATURE | COLOR_MODE_COLD_WARM_WHITE) or raw.get(
            "legacy_supports_color_temperature"
        ):
            low, high = raw.get("min_mireds"), raw.get("max_mireds")
            if low is None or high is None:
                low = high = None
            descriptors.append(
                EntityDescriptor(
                    key=f"{key}_color_temp",
                    name=name,
                    unit="mireds",
                    capability=ColorTempCapability(unit="mireds", min_mireds=low, max_mireds=high),
                )
            )
        if modes & COLOR_MODE_RGB or raw.get("legacy_supports_rgb"):
            descriptors.append(EntityDescriptor(key=f"{key}_rgb", name=name, capability=RGBCapability()))
        return descriptors

    logger.debug("Skipping unsupported ESPHome entity type %s (%s)", entity_type, key)
    return []


class ESPHomeDriver(ProtocolDriver):
    """Driver for one ESPHome node."""

    protocol = "esphome"

    def __init__(
        self,
        context: DriverContext,
        transport: ESPHomeTransport,
        default_port: int = 6053,
    ):
        super().__init__(context)
        self._transport = transport
        self._default_port = default_port
        self.device_info: dict[str, Any] = {}
        # entity key -> (raw ESPHome record, capability type)
        self._targets: dict[str, tuple[dict[str, Any], str]] = {}

    @property
    def is_connected(self) -> bool:
        return self._transport.is_open

    def _encryption_key(self) -> Optional[bytes]:
        value = self.context.credentials.get("encryption_key")
        if value is None:
            return None
        try:
            return decode_encryption_key(value)
        except ValueError as e:
            raise AuthError(self.device_id, str(e)) from e

    async def connect(self) -> None:
        if self.is_connected:
            raise AlreadyConnected(self.device_id)
        host = self.context.host
        if not host:
            raise DriverConnectionError(self.device_id, "no host address")
        port = self.context.port or self._default_port
        key = self._encryption_key()

        logger.info("Connecting to ESPHome node %s at %s:%d", self.device_id, host, port)
        try:
            self.device_info = await self._transport.open(host, port, key)
        except AuthError as e:
            raise AuthError(self.device_id, e.detail) from e
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            raise DriverConnectionError(self.device_id, str(e) or type(e).__name__) from e
        logger.info("Connected to ESPHome node %s (%s)", self.device_id, self.device_info.get("server_info", "unknown"))

    async def disconnect(self) -> None:
        was_connected = self.is_connected
        # A dropped session still holds a socket and reader until closed
        await self._transport.close()
        if was_connected:
            logger.info("Disconnected from ESPHome node %s", self.device_id)

    async def pair(
        self,
        device_id: str,
        credentials: Optional[dict[str, Any]] = None,
    ) -> PairingResult:
        credentials = dict(credentials or {})
        key = credentials.get("encryption_key", credentials.get("psk"))

        stored: dict[str, Any] = {}
        if key is not None:
            try:
                decode_encryption_key(key)
            except ValueError as e:
                raise PairingError(str(e), device_id) from e
            stored["encryption_key"] = key
            self.context.credentials["encryption_key"] = key
            logger.info("Encryption key recorded for %s", device_id)
        else:
            logger.info("Pairing %s without encryption", device_id)

        return PairingResult(credentials=stored, metadata={"encrypted": key is not None})

    async def list_entities(self) -> list[EntityDescriptor]:
        if not self.is_connected:
            return []
        descriptors = []
        targets = {}
        for raw in await self._transport.list_entities():
            for descriptor in entities_from_esphome(raw):
                targets[descriptor.key] = (raw, descriptor.capability.type)
                descriptors.append(descriptor)
        self._targets = targets
        return descriptors

    async def ping(self) -> None:
        if not self.is_connected:
            raise DriverConnectionError(self.device_id, "session is closed")
        try:
            await self._transport.ping()
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            raise DriverConnectionError(self.device_id, str(e) or type(e).__name__) from e

    def _command_for(self, key: str, value: Any) -> dict[str, Any]:
        target = self._targets.get(key)
        if target is None:
            raise CommandError(self.device_id, key, "entity not reported by the node")
        raw, capability = target
        entity_type = raw.get("type")
        numeric_key = raw.get("key")
        if entity_type not in ("switch", "number", "light"):
            raise CommandError(self.device_id, key, f"{entity_type} entities are read-only")
        if not isinstance(numeric_key, int):
            raise CommandError(self.device_id, key, "node did not report a numeric entity key")

        command: dict[str, Any] = {"type": entity_type, "key": numeric_key}
        if entity_type == "switch":
            command["state"] = bool(value)
        elif entity_type == "number":
            command["state"] = float(value)
        elif capability == "brightness":
            command["brightness"] = float(value) / 100
        elif capability == "color_temp":
            command["color_temperature"] = float(value)
        elif capability == "rgb":
            command["rgb"] = tuple(channel / 255 for channel in value)
        else:
            command["state"] = bool(value)
        return command

    async def send_command(self, key: str, value: Any) -> None:
        command = self._command_for(key, value)
        if not self.is_connected:
            raise DriverConnectionError(self.device_id, "session is closed")
        logger.debug("Sending %s command to %s:%s", command["type"], self.device_id, key)
        try:
            await self._transport.send_command(command)
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
        except (OSError, asyncio.IncompleteReadError) as e:
            raise DriverConnectionError(self.device_id, str(e) or type(e).__name__) from e
