"""
Ruta GET /rasterize-svg: el unico endpoint de conversion del gateway.

    GET /rasterize-svg?url=https://example.com/logo.svg&width=512&height=512
    GET /rasterize-svg?url=...&format=json

El endpoint es deliberadamente "delgado": identifica al cliente, elige el
formato de respuesta y delega TODO lo demas al pipeline (pipeline.py).
Los errores no se manejan aqui: el pipeline lanza un RasterizeError y el
exception handler registrado en main.py lo convierte en respuesta.

Por que width y height llegan como str y no como int?
-----------------------------------------------------
Si los declararamos `int`, FastAPI responderia 422 con su propio formato
ante "width=abc". Queremos un 400 InputError con nuestro formato de error,
y que el rate limiter cuente la peticion ANTES de validar parametros.
"""

from fastapi import APIRouter, Query
from starlette.requests import Request

from svg_gateway.services.negotiator import negotiate, select

router = APIRouter()


@router.get("/rasterize-svg")
async def rasterize_svg(
    request: Request,
    url: str | None = Query(None, description="URL http(s) del documento SVG"),
    width: str | None = Query(None, description="Ancho del PNG en pixeles (32..MAX_DIMENSION)"),
    height: str | None = Query(None, description="Alto del PNG en pixeles (32..MAX_DIMENSION)"),
    format: str | None = Query(None, description="'image' (default) o 'json'"),
):
    """
    Descarga, sanitiza y rasteriza un SVG remoto.

    Retorna:
        200 image/png con el PNG, o JSON {success, size, width, height,
        content_type, data_uri} si el cliente pidio JSON.

    Errores (ver errors.py): 400, 429 (con Retry-After) y 500.
    """
    state = request.app.state
    hint = negotiate(request)
    identity = state.client_identifier.identify(request)
    result = await state.pipeline.execute(identity, url, width, height)
    return select(hint, result)
