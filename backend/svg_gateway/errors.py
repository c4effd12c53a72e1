"""
Taxonomia de errores del pipeline de rasterizacion.

Cada falla de cualquier etapa (validacion, descarga, sanitizacion,
rasterizacion, rate limiting) se convierte en EXACTAMENTE una de estas
clases antes de llegar al orquestador. Cada clase sabe:

    - status_code: el codigo HTTP que ve el cliente.
    - error_type: un identificador estable ("not_svg_source", ...) que
      aparece en el body JSON y en los logs.
    - cacheable: si el error es deterministico para la misma entrada
      (misma URL + dimensiones) y por lo tanto puede guardarse en cache
      con el TTL corto de fallas.

    Error                  Status  Cacheable
    ---------------------  ------  ---------
    InputError              400     no
    AdmissionDenied         400     si
    NotSvgSource            400     si
    UpstreamFetchError      500     si
    PayloadTooLarge         500     si (es un UpstreamFetchError)
    SanitizationRejected    500     si
    RasterizationFailed     500     si
    RateLimited             429     no
    InternalFault           500     no

Por que RateLimited NUNCA se cachea?
------------------------------------
La cache esta indexada por URL + dimensiones, no por cliente. Si
guardaramos un 429 bajo esa llave, OTROS clientes que pidan el mismo SVG
recibirian un 429 que no les corresponde.
"""

from enum import Enum


class DenialReason(str, Enum):
    """Motivo por el que el guardia de URLs rechazo un destino."""

    INVALID_SCHEME = "invalid_scheme"
    INVALID_URL = "invalid_url"
    EMBEDDED_CREDENTIALS = "embedded_credentials"
    DISALLOWED_PORT = "disallowed_port"
    UNRESOLVABLE_HOST = "unresolvable_host"
    DISALLOWED_ADDRESS = "disallowed_address"


class RasterizeError(Exception):
    """Clase base de todos los errores que el pipeline reporta al cliente."""

    status_code: int = 500
    error_type: str = "internal_fault"
    cacheable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_descriptor(self) -> dict:
        """
        Serializa el error para guardarlo en una entrada de cache.

        Guardamos el error_type (no el nombre de la clase de Python) para
        que renombrar una clase no invalide las entradas ya guardadas.
        """
        return {"error_type": self.error_type, "message": self.message}


class InputError(RasterizeError):
    """Parametros malformados: URL ausente, width/height fuera de rango."""

    status_code = 400
    error_type = "input_error"
    cacheable = False


class AdmissionDenied(RasterizeError):
    """El guardia SSRF rechazo la URL (o un redirect, o la IP al conectar)."""

    status_code = 400
    error_type = "admission_denied"
    cacheable = True

    def __init__(self, message: str, reason: DenialReason = DenialReason.DISALLOWED_ADDRESS):
        super().__init__(message)
        self.reason = DenialReason(reason)

    def to_descriptor(self) -> dict:
        descriptor = super().to_descriptor()
        descriptor["reason"] = self.reason.value
        return descriptor


class NotSvgSource(RasterizeError):
    """El contenido descargado no es un documento SVG."""

    status_code = 400
    error_type = "not_svg_source"
    cacheable = True


class UpstreamFetchError(RasterizeError):
    """Timeout, error de red o status no-2xx del servidor origen."""

    status_code = 500
    error_type = "upstream_fetch_error"
    cacheable = True


class PayloadTooLarge(UpstreamFetchError):
    """El servidor origen envio mas bytes que MAX_SVG_BYTES."""

    error_type = "payload_too_large"


class SanitizationRejected(RasterizeError):
    """El sanitizador se nego a limpiar el documento (XML invalido, XXE...)."""

    status_code = 500
    error_type = "sanitization_rejected"
    cacheable = True


class RasterizationFailed(RasterizeError):
    """El rasterizador fallo o produjo un resultado fuera de los limites."""

    status_code = 500
    error_type = "rasterization_failed"
    cacheable = True


class RateLimited(RasterizeError):
    """El cliente excedio su cuota de la ventana actual."""

    status_code = 429
    error_type = "rate_limit_exceeded"
    cacheable = False

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class InternalFault(RasterizeError):
    """Cualquier error inesperado. Nunca se cachea."""

    status_code = 500
    error_type = "internal_fault"
    cacheable = False


# Mapa error_type -> clase, para reconstruir errores desde la cache.
# Solo incluimos los cacheables: un descriptor de otro tipo en la cache
# significa datos corruptos y se trata como InternalFault.
_CACHEABLE_ERRORS = {
    cls.error_type: cls
    for cls in (
        AdmissionDenied,
        NotSvgSource,
        UpstreamFetchError,
        PayloadTooLarge,
        SanitizationRejected,
        RasterizationFailed,
    )
}


def error_from_descriptor(descriptor: dict) -> RasterizeError:
    """
    Reconstruye el error original a partir de lo guardado en cache.

    Esto garantiza la "transparencia de cache": la segunda peticion recibe
    el MISMO status, error_type y mensaje que la primera.
    """
    cls = _CACHEABLE_ERRORS.get(descriptor.get("error_type", ""))
    message = descriptor.get("message", "")
    if cls is None:
        return InternalFault(f"Unknown cached error: {descriptor.get('error_type')!r}")
    if cls is AdmissionDenied:
        return AdmissionDenied(
            message, DenialReason(descriptor.get("reason", DenialReason.DISALLOWED_ADDRESS))
        )
    return cls(message)
