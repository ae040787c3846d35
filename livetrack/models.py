"""
Data models for LiveTrack service
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

SOURCE_DEVICE = "DEVICE"
SOURCE_DRIVER_APP = "DRIVER_APP"


class GpsFix(BaseModel):
    """Validated, normalized GPS fix as accepted by the ingest pipeline"""
    lat: float
    lon: float
    speed: float = 0.0
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationRecord(BaseModel):
    """Latest known position of one bus"""
    bus_id: str = Field(..., alias="busId")
    bus_number: str = Field(..., alias="busNumber")
    bus_name: Optional[str] = Field(None, alias="busName")
    lat: float
    lon: float
    speed: float = 0.0
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    driver_name: Optional[str] = Field(None, alias="driverName")
    driver_phone: Optional[str] = Field(None, alias="driverPhone")
    organization_id: str = Field(..., alias="organizationId")
    source: str = SOURCE_DEVICE
    updated_at: datetime = Field(..., alias="updatedAt")
    recorded_at: Optional[datetime] = Field(None, alias="recordedAt")
    is_online: Optional[bool] = Field(None, alias="isOnline")

    class Config:
        populate_by_name = True

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True)


class HistoryEntry(BaseModel):
    """Append-only GPS log row"""
    id: str
    bus_id: str = Field(..., alias="busId")
    driver_id: Optional[str] = Field(None, alias="driverId")
    lat: float
    lon: float
    speed: float = 0.0
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    source: str = SOURCE_DEVICE
    timestamp: datetime

    class Config:
        populate_by_name = True


class Stop(BaseModel):
    """Bus route stop"""
    id: str
    name: str
    latitude: float
    longitude: float
    order: int


class DriverInfo(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None


class BusInfo(BaseModel):
    """Static bus metadata owned by the registry"""
    bus_id: str = Field(..., alias="busId")
    bus_number: str = Field(..., alias="busNumber")
    bus_name: Optional[str] = Field(None, alias="busName")
    organization_id: str = Field(..., alias="organizationId")
    api_key_hash: Optional[str] = Field(None, alias="apiKeyHash")
    gps_device_id: Optional[str] = Field(None, alias="gpsDeviceId")
    is_active: bool = Field(True, alias="isActive")
    driver: Optional[DriverInfo] = None
    stops: List[Stop] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class IngestResult(BaseModel):
    bus_number: str = Field(..., alias="busNumber")
    updated_at: datetime = Field(..., alias="updatedAt")

    class Config:
        populate_by_name = True


class EtaRange(BaseModel):
    min: int
    max: int


class EtaFactors(BaseModel):
    hour_factor: float = Field(..., alias="hourFactor")
    day_factor: float = Field(..., alias="dayFactor")
    traffic_condition: str = Field(..., alias="trafficCondition")

    class Config:
        populate_by_name = True


class ETAResult(BaseModel):
    """Arrival estimate for one destination or route stop"""
    stop_id: Optional[str] = Field(None, alias="stopId")
    stop_name: Optional[str] = Field(None, alias="stopName")
    stop_order: Optional[int] = Field(None, alias="stopOrder")
    available: bool
    status: str  # PREDICTED, PASSED, UNAVAILABLE
    eta_seconds: Optional[int] = Field(None, alias="etaSeconds")
    eta_minutes: Optional[int] = Field(None, alias="eta")
    eta_range: Optional[EtaRange] = Field(None, alias="etaRange")
    arrival_time: Optional[datetime] = Field(None, alias="arrivalTime")
    distance_meters: Optional[int] = Field(None, alias="distance")
    effective_speed_kmh: Optional[int] = Field(None, alias="effectiveSpeed")
    confidence: Optional[float] = None
    confidence_label: str = Field(..., alias="confidenceLabel")
    prediction_type: Optional[str] = Field(None, alias="predictionType")
    factors: Optional[EtaFactors] = None
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class TrafficForecastEntry(BaseModel):
    hour: int
    time: str
    traffic_level: str = Field(..., alias="trafficLevel")
    speed_factor: int = Field(..., alias="speedFactor")
    best_for_travel: bool = Field(..., alias="bestForTravel")

    class Config:
        populate_by_name = True


class HealthStatus(BaseModel):
    """Service health status"""
    status: str  # healthy, unhealthy
    timestamp: str
    components: Dict[str, str]
