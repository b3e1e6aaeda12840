"""
Matter driver backed by a Matter controller.

Commissioning and node access are delegated to a controller; the default
one talks to python-matter-server over its WebSocket JSON API.
"""

import asyncio
import colorsys
import json
import logging
from typing import Any, Optional, Protocol, runtime_checkable

import websockets
from websockets.protocol import State

from ..capabilities import (
    BrightnessCapability,
    ColorTempCapability,
    EntityDescriptor,
    NumericCapability,
    OnOffCapability,
    RGBCapability,
)
from ..exceptions import AlreadyConnected, AuthError, CommandError, DriverConnectionError, PairingError
from .base import DriverContext, PairingResult, ProtocolDriver

logger = logging.getLogger("cove.hub.drivers.matter")

# Cluster ids
BASIC_INFORMATION = 40
ON_OFF = 6
LEVEL_CONTROL = 8
COLOR_CONTROL = 768
TEMPERATURE_MEASUREMENT = 1026
RELATIVE_HUMIDITY = 1029

# ColorControl attributes
COLOR_TEMPERATURE_MIREDS = 7
COLOR_CAPABILITIES = 16394
COLOR_TEMP_MIN_MIREDS = 16395
COLOR_TEMP_MAX_MIREDS = 16396

# ColorCapabilities bits
HUE_SATURATION_SUPPORTED = 1 << 0
XY_SUPPORTED = 1 << 3
COLOR_TEMPERATURE_SUPPORTED = 1 << 4


class MatterCommandError(Exception):
    """Error response from the Matter controller."""

    def __init__(self, command: str, error_code: Any, details: Any = None):
        self.command = command
        self.error_code = error_code
        self.details = details
        super().__init__(f"Matter command {command} failed ({error_code}): {details}")


@runtime_checkable
class MatterController(Protocol):
    """Access to a Matter fabric."""

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def commission_with_code(self, code: str, network_only: bool = True) -> dict[str, Any]:
        """Commission a device and return its node record."""
        ...

    async def get_node(self, node_id: int) -> dict[str, Any]:
        ...

    async def device_command(
        self,
        node_id: int,
        endpoint_id: int,
        cluster_id: int,
        command_name: str,
        payload: dict[str, Any],
    ) -> Any:
        """Invoke a cluster command on one endpoint of a node."""
        ...


class MatterServerClient:
    """
    WebSocket client for python-matter-server.

    Features:
    - Server info handshake on connect
    - Message ID tracking for command responses
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self._url = url
        self._timeout = timeout
        self._ws = None
        self._msg_id = 0
        self._lock = asyncio.Lock()
        self.server_info: dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        # The server can drop the socket between commands
        return self._ws is not None and self._ws.state is State.OPEN

    def _next_id(self) -> str:
        self._msg_id += 1
        return str(self._msg_id)

    async def connect(self) -> None:
        if self.is_connected:
            return
        if self._ws is not None:
            logger.info("Matter server connection was lost, reconnecting")
            await self.close()

        logger.info("Connecting to Matter server: %s", self._url)
        try:
            self._ws = await websockets.connect(self._url, close_timeout=5)
            raw_msg = await asyncio.wait_for(self._ws.recv(), timeout=self._timeout)
            self.server_info = json.loads(raw_msg)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            await self.close()
            raise DriverConnectionError("matter-server", str(e) or type(e).__name__) from e
        logger.info(
            "Matter server connected (schema %s, fabric %s)",
            self.server_info.get("schema_version"),
            self.server_info.get("fabric_id"),
        )

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Error closing Matter server connection: %s", e)

    async def send_command(self, command: str, **args: Any) -> Any:
        """Send a command and wait for the response carrying its message id."""
        if not self.is_connected:
            raise DriverConnectionError("matter-server", "not connected")

        async with self._lock:
            message_id = self._next_id()
            try:
                await self._ws.send(json.dumps({
                    "message_id": message_id,
                    "command": command,
                    "args": args,
                }))
                while True:
                    msg = json.loads(await asyncio.wait_for(self._ws.recv(), timeout=self._timeout))
                    if msg.get("message_id") == message_id:
                        break
                    logger.debug("Ignoring Matter server message while waiting for %s", command)
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                await self.close()
                raise DriverConnectionError("matter-server", str(e) or type(e).__name__) from e

        if "error_code" in msg:
            raise MatterCommandError(command, msg["error_code"], msg.get("details"))
        return msg.get("result")

    async def commission_with_code(self, code: str, network_only: bool = True) -> dict[str, Any]:
        return await self.send_command("commission_with_code", code=code, network_only=network_only)

    async def get_node(self, node_id: int) -> dict[str, Any]:
        return await self.send_command("get_node", node_id=node_id)

    async def device_command(
        self,
        node_id: int,
        endpoint_id: int,
        cluster_id: int,
        command_name: str,
        payload: dict[str, Any],
    ) -> Any:
        return await self.send_command(
            "device_command",
            node_id=node_id,
            endpoint_id=endpoint_id,
            cluster_id=cluster_id,
            command_name=command_name,
            payload=payload,
        )


def _endpoints(attributes: dict[str, Any]) -> dict[int, dict[int, dict[int, Any]]]:
    """Group 'endpoint/cluster/attribute' keys into endpoint -> cluster -> attribute."""
    grouped: dict[int, dict[int, dict[int, Any]]] = {}
    for path, value in attributes.items():
        try:
            endpoint, cluster, attribute = (int(part) for part in path.split("/"))
        except ValueError:
            continue
        grouped.setdefault(endpoint, {}).setdefault(cluster, {})[attribute] = value
    return grouped


def entities_from_matter(node: dict[str, Any]) -> list[EntityDescriptor]:
    """Map the clusters of a Matter node to hub entities."""
    descriptors = []
    for endpoint, clusters in sorted(_endpoints(node.get("attributes") or {}).items()):
        if endpoint == 0:
            continue
        prefix = f"ep{endpoint}"

        if ON_OFF in clusters:
            descriptors.append(
                EntityDescriptor(
                    key=f"{prefix}_on_off",
                    capability=OnOffCapability(),
                    value=clusters[ON_OFF].get(0),
                )
            )

        if LEVEL_CONTROL in clusters:
            level = clusters[LEVEL_CONTROL]
            low = level.get(2)
            high = level.get(3)
            descriptors.append(
                EntityDescriptor(
                    key=f"{prefix}_level",
                    capability=BrightnessCapability(
                        min=1 if low is None else low,
                        max=254 if high is None else high,
                    ),
                    value=level.get(0),
                )
            )

        if COLOR_CONTROL in clusters:
            color = clusters[COLOR_CONTROL]
            caps = color.get(COLOR_CAPABILITIES, 0) or 0
            if caps & COLOR_TEMPERATURE_SUPPORTED or COLOR_TEMPERATURE_MIREDS in color:
                low, high = color.get(COLOR_TEMP_MIN_MIREDS), color.get(COLOR_TEMP_MAX_MIREDS)
                if low is None or high is None:
                    low = high = None
                descriptors.append(
                    EntityDescriptor(
                        key=f"{prefix}_color_temp",
                        unit="mireds",
                        capability=ColorTempCapability(unit="mireds", min_mireds=low, max_mireds=high),
                        value=color.get(COLOR_TEMPERATURE_MIREDS),
                    )
                )
            if caps & (HUE_SATURATION_SUPPORTED | XY_SUPPORTED):
                descriptors.append(EntityDescriptor(key=f"{prefix}_color", capability=RGBCapability()))

        for cluster, unit in ((TEMPERATURE_MEASUREMENT, "°C"), (RELATIVE_HUMIDITY, "%")):
            if cluster in clusters:
                raw = clusters[cluster].get(0)
                descriptors.append(
                    EntityDescriptor(
                        key=f"{prefix}_{'temperature' if cluster == TEMPERATURE_MEASUREMENT else 'humidity'}",
                        unit=unit,
                        capability=NumericCapability(unit=unit, precision=2),
                        # Measured values are reported in hundredths
                        value=raw / 100 if raw is not None else None,
                    )
                )
    return descriptors


def node_name(node: dict[str, Any]) -> Optional[str]:
    attributes = node.get("attributes") or {}
    return (
        attributes.get(f"0/{BASIC_INFORMATION}/5")
        or attributes.get(f"0/{BASIC_INFORMATION}/3")
        or None
    )


class MatterDriver(ProtocolDriver):
    """Driver for one commissioned Matter node."""

    protocol = "matter"

    def __init__(
        self,
        context: DriverContext,
        controller: MatterController,
        network_only: bool = True,
    ):
        super().__init__(context)
        self._controller = controller
        self._network_only = network_only
        self._node: Optional[dict[str, Any]] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._controller.is_connected

    def _node_id(self) -> int:
        node_id = self.context.credentials.get("node_id")
        if node_id is None:
            raise AuthError(self.device_id, "device has not been commissioned (no node_id)")
        try:
            return int(node_id)
        except (TypeError, ValueError) as e:
            raise AuthError(self.device_id, f"invalid node_id {node_id!r}") from e

    async def connect(self) -> None:
        if self.is_connected:
            raise AlreadyConnected(self.device_id)
        node_id = self._node_id()

        try:
            await self._controller.connect()
            node = await self._controller.get_node(node_id)
        except MatterCommandError as e:
            raise DriverConnectionError(self.device_id, str(e)) from e
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
        if not node or not node.get("available", True):
            raise DriverConnectionError(self.device_id, f"node {node_id} is unavailable")

        self._node = node
        self._connected = True
        logger.info("Connected to Matter node %s (node_id=%d)", self.device_id, node_id)

    async def disconnect(self) -> None:
        self._connected = False
        await self._controller.close()

    async def pair(
        self,
        device_id: str,
        credentials: Optional[dict[str, Any]] = None,
    ) -> PairingResult:
        credentials = dict(credentials or {})
        code = credentials.get("setup_code")
        if not code:
            raise PairingError("setup code required", device_id)

        logger.info("Commissioning Matter device %s", device_id)
        try:
            await self._controller.connect()
            node = await self._controller.commission_with_code(str(code), network_only=self._network_only)
        except MatterCommandError as e:
            raise PairingError(f"commissioning failed: {e.details or e.error_code}", device_id) from e
        except DriverConnectionError as e:
            raise PairingError(f"controller unavailable: {e.detail}", device_id) from e

        node_id = node.get("node_id")
        if node_id is None:
            raise PairingError("controller returned no node id", device_id)

        self._node = node
        self.context.credentials["node_id"] = node_id
        logger.info("Commissioned %s as node %s", device_id, node_id)
        return PairingResult(
            device_id=f"matter.node-{node_id}",
            name=node_name(node),
            credentials={"node_id": node_id},
            metadata={"node_id": node_id},
            entities=entities_from_matter(node),
        )

    async def list_entities(self) -> list[EntityDescriptor]:
        if self._node is None:
            return []
        return entities_from_matter(self._node)

    async def ping(self) -> None:
        if not self.is_connected:
            raise DriverConnectionError(self.device_id, "controller session is closed")
        node_id = self._node_id()
        try:
            node = await self._controller.get_node(node_id)
        except MatterCommandError as e:
            raise DriverConnectionError(self.device_id, str(e)) from e
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
        if not node or not node.get("available", True):
            raise DriverConnectionError(self.device_id, f"node {node_id} is unavailable")

    def _command_for(self, key: str, value: Any) -> tuple[int, int, str, dict[str, Any]]:
        """Map an entity write to (endpoint, cluster, command name, payload)."""
        prefix, _, facet = key.partition("_")
        if not prefix.startswith("ep") or not prefix[2:].isdigit():
            raise CommandError(self.device_id, key, "not a Matter endpoint entity")
        endpoint = int(prefix[2:])

        if facet == "on_off":
            return endpoint, ON_OFF, "On" if value else "Off", {}
        if facet == "level":
            return endpoint, LEVEL_CONTROL, "MoveToLevelWithOnOff", {
                "level": int(round(value)),
                "transitionTime": 0,
                "optionsMask": 0,
                "optionsOverride": 0,
            }
        if facet == "color_temp":
            return endpoint, COLOR_CONTROL, "MoveToColorTemperature", {
                "colorTemperatureMireds": int(round(value)),
                "transitionTime": 0,
                "optionsMask": 0,
                "optionsOverride": 0,
            }
        if facet == "color":
            hue, saturation, _ = colorsys.rgb_to_hsv(*(channel / 255 for channel in value))
            return endpoint, COLOR_CONTROL, "MoveToHueAndSaturation", {
                "hue": int(round(hue * 254)),
                "saturation": int(round(saturation * 254)),
                "transitionTime": 0,
                "optionsMask": 0,
                "optionsOverride": 0,
            }
        raise CommandError(self.device_id, key, f"{facet} entities are read-only")

    async def send_command(self, key: str, value: Any) -> None:
        endpoint, cluster, command_name, payload = self._command_for(key, value)
        if not self.is_connected:
            raise DriverConnectionError(self.device_id, "controller session is closed")
        node_id = self._node_id()
        logger.debug("Invoking %s on %s endpoint %d", command_name, self.device_id, endpoint)
        try:
            await self._controller.device_command(node_id, endpoint, cluster, command_name, payload)
        except MatterCommandError as e:
            raise CommandError(self.device_id, key, f"{e.details or e.error_code}") from e
        except DriverConnectionError as e:
            raise DriverConnectionError(self.device_id, e.detail) from e
