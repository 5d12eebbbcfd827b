"""Device discovery: flattens houses -> stations -> devices into one list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from xsense_cloud.api import RestClient
from xsense_cloud.protocol import Operation

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceRecord:
    """One addressable device, carrying its station's identity.

    A base station shows up as a record whose ``device_id`` equals its
    ``station_sn``; every other record is a sensor attached to a station.
    """

    station_sn: str
    station_name: str
    device_id: str
    device_name: str
    type_id: object
    device_model: str
    status: dict[str, Any] = field(default_factory=dict)
    mqtt_server: str | None = None
    """Broker host hint from the owning house, if any."""
    mqtt_region: str | None = None
    """Broker region hint from the owning house, if any."""

    @property
    def is_station(self) -> bool:
        return bool(self.station_sn) and self.device_id == self.station_sn

    @property
    def house_id(self) -> str:
        """House prefix of the station serial (``<house>_<station>``)."""
        return self.station_sn.split("_")[0]

    @classmethod
    def from_api(
        cls,
        station: dict[str, Any],
        device: dict[str, Any],
        house: dict[str, Any] | None = None,
    ) -> DeviceRecord:
        house = house or {}
        status = device.get("status")
        return cls(
            station_sn=str(station.get("stationSn") or ""),
            station_name=str(station.get("stationName") or ""),
            device_id=str(device.get("deviceId") or ""),
            device_name=str(device.get("deviceName") or device.get("deviceId") or ""),
            type_id=device.get("deviceType"),
            device_model=str(device.get("deviceModel") or device.get("deviceType") or ""),
            status=status if isinstance(status, dict) else {},
            mqtt_server=house.get("mqttServer") or house.get("mqtt_server"),
            mqtt_region=house.get("mqttRegion") or house.get("mqtt_region"),
        )


class DeviceDirectory:
    """Fetches the account's devices and remembers the last successful list."""

    def __init__(self, api: RestClient) -> None:
        self._api = api
        self._last_known: list[DeviceRecord] = []

    @property
    def last_known(self) -> list[DeviceRecord]:
        """Devices from the most recent successful :meth:`fetch_all`."""
        return list(self._last_known)

    @property
    def station_serials(self) -> list[str]:
        """Unique station serials of the cached list, in first-seen order."""
        return list(dict.fromkeys(d.station_sn for d in self._last_known if d.station_sn))

    async def fetch_all(self) -> list[DeviceRecord]:
        """Fetch every device on the account.

        The cache is replaced only when the whole walk succeeds; on any
        error it keeps the previous list and the error propagates.
        """
        _LOGGER.debug("Fetching device list...")
        if self._api.protocol.hierarchical:
            devices = await self._fetch_hierarchy()
        else:
            devices = await self._fetch_flat()
        self._last_known = devices
        _LOGGER.debug("Fetched %d devices.", len(devices))
        return list(devices)

    async def _fetch_hierarchy(self) -> list[DeviceRecord]:
        houses = await self._api.call(Operation.HOUSES, {"utctimestamp": "0"})
        devices: list[DeviceRecord] = []
        for house in houses or []:
            station_data = await self._api.call(
                Operation.STATIONS, {"houseId": house.get("houseId"), "utctimestamp": "0"}
            )
            for station in (station_data or {}).get("stations") or []:
                devices.extend(_flatten_station(house, station))
        return devices

    async def _fetch_flat(self) -> list[DeviceRecord]:
        data = await self._api.call(Operation.DEVICES, {})
        devices: list[DeviceRecord] = []
        for d in data or []:
            # Flat listings already use snake_case station fields.
            station = {"stationSn": d.get("station_sn"), "stationName": d.get("station_name")}
            device = {
                "deviceId": d.get("device_id"),
                "deviceName": d.get("device_name"),
                "deviceType": d.get("type_id"),
                "deviceModel": d.get("device_model"),
                "status": d.get("status"),
            }
            house = {"mqttServer": d.get("mqttServer"), "mqttRegion": d.get("mqttRegion")}
            devices.append(DeviceRecord.from_api(station, device, house))
        return devices


def _flatten_station(house: dict[str, Any], station: dict[str, Any]) -> list[DeviceRecord]:
    """Records for one station: an optional self-record, then its devices in order."""
    station_sn = station.get("stationSn")
    members = station.get("devices") or []
    records: list[DeviceRecord] = []
    listed = {d.get("deviceId") for d in members}
    if station_sn and station.get("deviceId") == station_sn and station_sn not in listed:
        self_device = {
            "deviceId": station_sn,
            "deviceName": station.get("stationName"),
            "deviceType": station.get("deviceType") or station.get("category"),
            "deviceModel": station.get("deviceModel") or station.get("category"),
            "status": station.get("status"),
        }
        records.append(DeviceRecord.from_api(station, self_device, house))
    records.extend(DeviceRecord.from_api(station, d, house) for d in members)
    return records
