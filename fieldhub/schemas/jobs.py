from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class JobCreate(BaseModel):
    name: str
    client: Optional[str] = None
    location_id: Optional[str] = None


class JobResponse(JobCreate):
    id: str
    status: str = "active"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
