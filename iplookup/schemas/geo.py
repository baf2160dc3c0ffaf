from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

UNKNOWN = "Unknown"
UNKNOWN_CODE = "XX"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Coordinates(_CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Location(_CamelModel):
    country: str = UNKNOWN
    country_code: str = Field(UNKNOWN_CODE, alias="countryCode")
    region: str = UNKNOWN
    city: str = UNKNOWN
    zip_code: str = Field(UNKNOWN, alias="zipCode")
    coordinates: Coordinates = Field(default_factory=Coordinates)
    timezone: str = UNKNOWN


class Network(_CamelModel):
    isp: str = UNKNOWN
    organization: str = UNKNOWN
    asn: Optional[int] = None
    as_name: str = Field(UNKNOWN, alias="asName")


class GeoRecord(_CamelModel):
    """Normalized lookup result; every field has an explicit default"""
    status_code: int = Field(200, alias="statusCode")
    status: str = "success"
    ip: str
    location: Location = Field(default_factory=Location)
    network: Network = Field(default_factory=Network)

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True)


class ErrorResponse(BaseModel):
    error: str
    message: str


class DatabaseDetail(BaseModel):
    status: str = Field(..., description="Loaded or Not loaded")
    path: Optional[str] = None
    loaded_at: Optional[float] = None


class RefreshRequest(BaseModel):
    types: Optional[List[str]] = Field(None, description="Database types to refresh (default: all)")


class DatabaseStatusResponse(BaseModel):
    status: Dict[str, str]
    details: Dict[str, DatabaseDetail]
    refresh: dict
