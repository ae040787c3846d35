"""
Read-only bus, driver and stop metadata used to enrich GPS fixes
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key

from .auth import hash_api_key
from .models import BusInfo

logger = logging.getLogger(__name__)

API_KEY_INDEX_NAME = "apiKeyHash-index"
DEVICE_ID_INDEX_NAME = "gpsDeviceId-index"


class BusRegistry:
    """Lookup interface over the fleet owned by the CRUD side of the system"""

    async def get_bus(self, bus_id: str) -> Optional[BusInfo]:
        raise NotImplementedError

    async def find_by_api_key(self, api_key: str) -> Optional[BusInfo]:
        raise NotImplementedError

    async def find_by_device_id(self, gps_device_id: str) -> Optional[BusInfo]:
        raise NotImplementedError

    async def get_bus_for_driver(self, driver_id: str) -> Optional[BusInfo]:
        raise NotImplementedError

    async def find_by_number(
        self, bus_number: str, organization_id: Optional[str] = None
    ) -> Optional[BusInfo]:
        raise NotImplementedError

    async def list_buses(self, organization_id: Optional[str] = None) -> List[BusInfo]:
        raise NotImplementedError


def _bus_from_dict(data: Dict[str, Any]) -> BusInfo:
    data = dict(data)
    api_key = data.pop("apiKey", None)
    if api_key and not data.get("apiKeyHash"):
        data["apiKeyHash"] = hash_api_key(api_key)
    return BusInfo.model_validate(data)


class MemoryBusRegistry(BusRegistry):
    """Registry held in process, optionally seeded from a fleet JSON file"""

    def __init__(self, buses: Optional[List[BusInfo]] = None):
        self._buses: Dict[str, BusInfo] = {}
        for bus in buses or []:
            self.register_bus(bus)

    @classmethod
    def from_file(cls, path: str) -> "MemoryBusRegistry":
        """Load {"buses": [...]} where each bus may carry a plain `apiKey`"""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        buses = [_bus_from_dict(item) for item in data.get("buses", [])]
        logger.info(f"Loaded {len(buses)} buses from {path}")
        return cls(buses)

    def register_bus(self, bus: BusInfo) -> None:
        self._buses[bus.bus_id] = bus

    def _active(self) -> List[BusInfo]:
        return [b for b in self._buses.values() if b.is_active]

    async def get_bus(self, bus_id: str) -> Optional[BusInfo]:
        return self._buses.get(bus_id)

    async def find_by_api_key(self, api_key: str) -> Optional[BusInfo]:
        key_hash = hash_api_key(api_key)
        return next((b for b in self._active() if b.api_key_hash == key_hash), None)

    async def find_by_device_id(self, gps_device_id: str) -> Optional[BusInfo]:
        return next((b for b in self._active() if b.gps_device_id == gps_device_id), None)

    async def get_bus_for_driver(self, driver_id: str) -> Optional[BusInfo]:
        return next(
            (b for b in self._active() if b.driver and b.driver.id == driver_id),
            None
        )

    async def find_by_number(
        self, bus_number: str, organization_id: Optional[str] = None
    ) -> Optional[BusInfo]:
        wanted = bus_number.strip().upper()
        for bus in self._buses.values():
            if bus.bus_number.upper() != wanted:
                continue
            if organization_id and bus.organization_id != organization_id:
                continue
            return bus
        return None

    async def list_buses(self, organization_id: Optional[str] = None) -> List[BusInfo]:
        buses = self._active()
        if organization_id:
            buses = [b for b in buses if b.organization_id == organization_id]
        return sorted(buses, key=lambda b: b.bus_number)


class DynamoBusRegistry(BusRegistry):
    """Registry backed by the DynamoDB device table (deviceId = bus id)"""

    def __init__(self, table_name: str, region: str = "us-east-1", table=None):
        if table is None:
            dynamodb = boto3.resource('dynamodb', region_name=region)
            table = dynamodb.Table(table_name)
        self.table = table
        self.table_name = table_name

    @staticmethod
    def _from_item(item: Dict[str, Any]) -> BusInfo:
        attributes = item.get('attributes', {})
        return BusInfo(
            busId=item['deviceId'],
            busNumber=item['busNumber'],
            busName=item.get('busName'),
            organizationId=item['organizationId'],
            apiKeyHash=item.get('apiKeyHash'),
            gpsDeviceId=item.get('gpsDeviceId'),
            isActive=item.get('isActive', True),
            driver=attributes.get('driver'),
            stops=[
                {**stop, 'latitude': float(stop['latitude']), 'longitude': float(stop['longitude']),
                 'order': int(stop['order'])}
                for stop in attributes.get('stops', [])
            ]
        )

    async def _run(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    async def _query_one(self, index_name: str, key: str, value: str) -> Optional[BusInfo]:
        response = await self._run(
            lambda: self.table.query(
                IndexName=index_name,
                KeyConditionExpression=Key(key).eq(value),
                Limit=1
            )
        )
        items = [i for i in response.get('Items', []) if i.get('isActive', True)]
        return self._from_item(items[0]) if items else None

    async def _scan(self, filter_expression=None) -> List[BusInfo]:
        params = {}
        if filter_expression is not None:
            params['FilterExpression'] = filter_expression

        items = []
        response = await self._run(lambda: self.table.scan(**params))
        items.extend(response.get('Items', []))
        # Handle pagination
        while 'LastEvaluatedKey' in response:
            start_key = response['LastEvaluatedKey']
            response = await self._run(
                lambda: self.table.scan(ExclusiveStartKey=start_key, **params)
            )
            items.extend(response.get('Items', []))
        return [self._from_item(item) for item in items]

    async def get_bus(self, bus_id: str) -> Optional[BusInfo]:
        response = await self._run(lambda: self.table.get_item(Key={'deviceId': bus_id}))
        item = response.get('Item')
        return self._from_item(item) if item else None

    async def find_by_api_key(self, api_key: str) -> Optional[BusInfo]:
        return await self._query_one(API_KEY_INDEX_NAME, 'apiKeyHash', hash_api_key(api_key))

    async def find_by_device_id(self, gps_device_id: str) -> Optional[BusInfo]:
        return await self._query_one(DEVICE_ID_INDEX_NAME, 'gpsDeviceId', gps_device_id)

    async def get_bus_for_driver(self, driver_id: str) -> Optional[BusInfo]:
        buses = await self._scan(Attr('attributes.driver.id').eq(driver_id))
        active = [b for b in buses if b.is_active]
        return active[0] if active else None

    async def find_by_number(
        self, bus_number: str, organization_id: Optional[str] = None
    ) -> Optional[BusInfo]:
        # Stored numbers keep whatever case they were registered with
        wanted = bus_number.strip().upper()
        condition = Attr('organizationId').eq(organization_id) if organization_id else None
        buses = await self._scan(condition)
        matches = [b for b in buses if b.bus_number.upper() == wanted]
        return matches[0] if matches else None

    async def list_buses(self, organization_id: Optional[str] = None) -> List[BusInfo]:
        condition = Attr('isActive').ne(False)
        if organization_id:
            condition = condition & Attr('organizationId').eq(organization_id)
        buses = await self._scan(condition)
        return sorted(buses, key=lambda b: b.bus_number)


def create_bus_registry(settings) -> BusRegistry:
    """Build the registry selected by settings.REGISTRY_BACKEND"""
    if settings.REGISTRY_BACKEND == "dynamodb":
        return DynamoBusRegistry(settings.DEVICE_TABLE_NAME, region=settings.AWS_REGION)
    if settings.REGISTRY_BACKEND != "memory":
        raise ValueError(f"Unknown REGISTRY_BACKEND: {settings.REGISTRY_BACKEND}")
    if settings.FLEET_FILE:
        return MemoryBusRegistry.from_file(settings.FLEET_FILE)
    logger.warning("No FLEET_FILE configured, bus registry is empty")
    return MemoryBusRegistry()
