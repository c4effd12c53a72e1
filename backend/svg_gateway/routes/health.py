"""
Ruta GET /health.

Usada por load balancers, Kubernetes (liveness/readiness) y monitoreo.
Ademas de "el proceso esta vivo", verifica que el almacen compartido
(memoria o Redis) responda: sin el, la cache y el rate limiter no
funcionan bien, y el orquestador deberia sacar esta replica del balanceo.

    200 {"status": "ok",       ..., "dependencies": {"store": "ok"}}
    503 {"status": "degraded", ..., "dependencies": {"store": "unavailable"}}
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from starlette.requests import Request

from svg_gateway.config import VERSION
from svg_gateway.models.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    store_ok = await request.app.state.store.ping()
    body = HealthResponse(
        status="ok" if store_ok else "degraded",
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies={"store": "ok" if store_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if store_ok else 503, content=body.model_dump())
