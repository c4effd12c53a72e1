"""
Esquemas (Pydantic) de las respuestas JSON de la API.

Son el "contrato" con los clientes que piden JSON (format=json o
Accept: application/json). Los clientes que piden la imagen reciben el
PNG crudo y nunca ven estos modelos.

    Exito:  {"success": true, "size": 5123, "width": 512, "height": 512,
             "content_type": "image/png", "data_uri": "data:image/png;base64,..."}
    Error:  {"success": false, "error": "not_svg_source",
             "message": "...", "retry_after": 17}   # retry_after solo en 429
"""

from pydantic import BaseModel


class RasterizeResponse(BaseModel):
    """
    Respuesta JSON de GET /rasterize-svg.

    Atributos:
        success (bool): Siempre True en este modelo.
        size (int): Bytes del PNG (no del data URI).
        width (int): Ancho del PNG en pixeles.
        height (int): Alto del PNG en pixeles.
        content_type (str): "image/png".
        data_uri (str): El PNG en base64 listo para usar en un <img src>.
    """
    success: bool = True
    size: int
    width: int
    height: int
    content_type: str
    data_uri: str


class ErrorResponse(BaseModel):
    """
    Formato uniforme de error para clientes JSON.

    Atributos:
        error (str): error_type estable ("admission_denied", ...).
        message (str): Mensaje legible.
        retry_after (int | None): Segundos de espera, solo en 429.
    """
    success: bool = False
    error: str
    message: str
    retry_after: int | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    dependencies: dict[str, str]
