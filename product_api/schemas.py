from typing import Any, List, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    database: str


class ProductResponse(BaseModel):
    message: str
    payload: Any


class ProductListResponse(BaseModel):
    message: str
    payload: List[Any]
    total_count: Optional[int] = None
