"""
Negociacion de la respuesta: PNG crudo o JSON.

El mismo resultado del pipeline se puede entregar de dos formas, y la
eleccion NUNCA cambia que se procesa ni que se guarda en cache: solo
cambia el "envoltorio".

    ?format=json  o  Accept: application/json  -> JSON con data URI
    ?format=image o  Accept: image/*, */*, nada -> bytes image/png

Reglas de Accept (RFC 9110, valores q):
    - Se toma el q mas alto de application/json y el q mas alto de
      cualquier tipo de imagen (image/png, image/*, */*).
    - JSON gana si su q es MAYOR O IGUAL al de imagen (y mayor que 0).
    - Sin header Accept -> imagen.
"""

import base64
from enum import Enum

from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.requests import Request

from svg_gateway.errors import RasterizeError, RateLimited
from svg_gateway.models.schemas import ErrorResponse, RasterizeResponse

JSON_MEDIA = "application/json"
IMAGE_MEDIA = ("image/png", "image/*", "*/*")


class AcceptHint(str, Enum):
    IMAGE = "image"
    JSON = "json"


def _parse_accept(header: str) -> dict[str, float]:
    """'a/b;q=0.5, c/d' -> {"a/b": 0.5, "c/d": 1.0} (q mas alto por tipo)."""
    ranks = {}
    for part in header.split(","):
        media, *params = [piece.strip() for piece in part.split(";")]
        if not media:
            continue
        quality = 1.0
        for param in params:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        media = media.lower()
        ranks[media] = max(quality, ranks.get(media, 0.0))
    return ranks


def negotiate(request: Request) -> AcceptHint:
    """Decide el formato de la respuesta a partir de ?format= y Accept."""
    explicit = (request.query_params.get("format") or "").strip().lower()
    if explicit in (AcceptHint.JSON.value, AcceptHint.IMAGE.value):
        return AcceptHint(explicit)

    header = request.headers.get("accept")
    if not header:
        return AcceptHint.IMAGE

    ranks = _parse_accept(header)
    json_rank = ranks.get(JSON_MEDIA, 0.0)
    image_rank = max((ranks.get(media, 0.0) for media in IMAGE_MEDIA), default=0.0)
    if json_rank > 0 and json_rank >= image_rank:
        return AcceptHint.JSON
    return AcceptHint.IMAGE


def select(hint: AcceptHint, result) -> Response:
    """
    Construye la respuesta de exito.

    Parametros:
        hint (AcceptHint): Formato elegido por negotiate().
        result (PipelineResult): PNG + dimensiones.
    """
    if hint is AcceptHint.JSON:
        encoded = base64.b64encode(result.png).decode("ascii")
        body = RasterizeResponse(
            size=len(result.png),
            width=result.width,
            height=result.height,
            content_type=result.content_type,
            data_uri=f"data:{result.content_type};base64,{encoded}",
        )
        return JSONResponse(content=body.model_dump())
    return Response(content=result.png, media_type=result.content_type)


def render_error(hint: AcceptHint, error: RasterizeError) -> Response:
    """
    Construye la respuesta de error con el status de la taxonomia.

    El header Retry-After se envia en TODOS los 429, pida el cliente
    JSON o no.
    """
    headers = {}
    retry_after = None
    if isinstance(error, RateLimited):
        retry_after = error.retry_after
        headers["Retry-After"] = str(retry_after)

    if hint is AcceptHint.JSON:
        body = ErrorResponse(error=error.error_type, message=error.message, retry_after=retry_after)
        return JSONResponse(
            status_code=error.status_code,
            content=body.model_dump(exclude_none=True),
            headers=headers,
        )
    return PlainTextResponse(
        f"{error.error_type}: {error.message}",
        status_code=error.status_code,
        headers=headers,
    )
