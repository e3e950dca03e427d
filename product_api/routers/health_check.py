from typing import Tuple

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from product_api.database import ConnectionManager, ConnectionState
from product_api.schemas import HealthResponse

router = APIRouter(tags=["Health"])

HEALTHY = HealthResponse(status="OK", database="connected")
UNHEALTHY = HealthResponse(status="NOT OK", database="disconnected")


def check_health(manager: ConnectionManager) -> Tuple[int, HealthResponse]:
    """Classify the current connection state. Reads state only."""
    if manager is not None and manager.state is ConnectionState.connected:
        return 200, HEALTHY
    return 503, UNHEALTHY


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
)
def health(request: Request):
    manager = getattr(request.app.state, "db_manager", None)
    status_code, body = check_health(manager)
    return JSONResponse(status_code=status_code, content=body.model_dump())
