from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    database: str
    rules_version: str
    timestamp: datetime
    environment: str
    version: str
