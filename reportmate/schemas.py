"""
Pydantic schemas for API request/response models
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ===== CACHE ADMIN SCHEMAS =====

class CacheInvalidateRequest(BaseModel):
    """Body of POST /api/cache/invalidate"""
    invalidate_all: bool = Field(False, alias="invalidateAll")
    endpoint: Optional[str] = None
    device_id: Optional[str] = Field(None, alias="deviceId")
    serial_number: Optional[str] = Field(None, alias="serialNumber")

    class Config:
        populate_by_name = True


class CacheInvalidateResponse(BaseModel):
    """Which cache entries were dropped"""
    success: bool = True
    message: str
    timestamp: str
    invalidated: List[str]


class EndpointStatus(BaseModel):
    """Policy and current entry state for one bulk endpoint"""
    endpoint: str
    description: str
    ttl_seconds: float = Field(serialization_alias="ttlSeconds")
    cached: bool
    records: Optional[int] = None
    age_seconds: Optional[float] = Field(None, serialization_alias="ageSeconds")
    fresh: Optional[bool] = None
    refreshing: bool = False


class CacheStatusResponse(BaseModel):
    """Body of GET /api/cache/status"""
    timestamp: str
    caches: Dict[str, EndpointStatus]
    stats: Dict[str, Any]
