"""
Orquestador del pipeline de rasterizacion.

Este modulo es el "director de orquesta": no descarga, no sanitiza y no
dibuja nada por si mismo, sino que llama a cada servicio en el orden
correcto y decide que hacer con cada resultado.

Maquina de estados de una peticion:

    START -> RATE_CHECK -> INPUT_VALIDATE -> URL_VALIDATE -> CACHE_LOOKUP
        |
        +-- hit ----> HIT_RETURN ------------------------------------+
        |                                                            |
        +-- miss ---> FETCH -> CONTENT_CHECK -> SANITIZE -> RASTERIZE |
                        -> CACHE_STORE --------------------------------+-> RESPOND

    Cualquier etapa puede ir a ERROR, que es absorbente: el error se
    clasifica en UNA clase de errors.py y se responde con ella.

Que fallas se guardan en cache?
-------------------------------
Solo las deterministicas que ocurren de FETCH en adelante: si la misma URL
con las mismas dimensiones va a fallar igual dentro de 60 segundos, no
tiene sentido volver a descargarla. RateLimited e InputError dependen del
cliente, no de la URL, y nunca se guardan. InternalFault tampoco: es un
bug nuestro, no una propiedad de la URL.

Si el cliente se desconecta a mitad de camino, el pipeline sigue hasta el
final para que el resultado quede en cache para el siguiente.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum

from svg_gateway.errors import (
    InputError,
    InternalFault,
    NotSvgSource,
    RasterizationFailed,
    RasterizeError,
    RateLimited,
    SanitizationRejected,
)
from svg_gateway.services.cache import CacheEntry, ResultCache, compute_signature
from svg_gateway.services.content_kind import ContentKind
from svg_gateway.services.fetcher import SvgFetcher
from svg_gateway.services.rate_limiter import RateLimiter
from svg_gateway.services.rasterizer import SvgRasterizer
from svg_gateway.services.sanitizer import SvgSanitizer
from svg_gateway.services.url_guard import UrlAdmissionGuard

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"^\d+$")


class PipelineStage(str, Enum):
    START = "start"
    RATE_CHECK = "rate_check"
    INPUT_VALIDATE = "input_validate"
    URL_VALIDATE = "url_validate"
    CACHE_LOOKUP = "cache_lookup"
    HIT_RETURN = "hit_return"
    FETCH = "fetch"
    CONTENT_CHECK = "content_check"
    SANITIZE = "sanitize"
    RASTERIZE = "rasterize"
    CACHE_STORE = "cache_store"
    RESPOND = "respond"
    ERROR = "error"


@dataclass(frozen=True)
class RasterRequest:
    """Peticion ya validada: URL + dimensiones dentro de rango."""

    url: str
    width: int
    height: int


@dataclass(frozen=True)
class PipelineResult:
    png: bytes
    width: int
    height: int
    content_type: str = "image/png"


def _parse_dimension(name: str, raw, settings) -> int:
    if raw is None or str(raw).strip() == "":
        return settings.DEFAULT_DIMENSION
    text = str(raw).strip()
    if not _DIGITS.match(text):
        raise InputError(f"{name} must be an integer, got {text[:32]!r}")
    value = int(text)
    if not settings.MIN_DIMENSION <= value <= settings.MAX_DIMENSION:
        raise InputError(
            f"{name} must be between {settings.MIN_DIMENSION} and "
            f"{settings.MAX_DIMENSION}, got {value}"
        )
    return value


def parse_raster_request(url, width, height, settings) -> RasterRequest:
    """
    Valida los parametros crudos del query string.

    Parametros:
        url (str | None): URL del SVG. Obligatoria.
        width, height (str | int | None): Dimensiones. Default 1024.
        settings (Settings): Limites MIN_DIMENSION / MAX_DIMENSION.

    Raises:
        InputError: URL ausente o dimension no entera / fuera de rango.
            Nunca recortamos en silencio un valor fuera de rango.
    """
    if url is None or not str(url).strip():
        raise InputError("Missing required parameter: url")
    return RasterRequest(
        url=str(url).strip(),
        width=_parse_dimension("width", width, settings),
        height=_parse_dimension("height", height, settings),
    )


class RasterizePipeline:
    """
    Ejecuta la maquina de estados para una peticion.

    Todos los colaboradores se inyectan (ver main.py): los tests pueden
    reemplazar cualquiera por un fake.
    """

    def __init__(
        self,
        settings,
        guard: UrlAdmissionGuard,
        limiter: RateLimiter,
        cache: ResultCache,
        fetcher: SvgFetcher,
        sanitizer: SvgSanitizer,
        rasterizer: SvgRasterizer,
    ):
        self.settings = settings
        self.guard = guard
        self.limiter = limiter
        self.cache = cache
        self.fetcher = fetcher
        self.sanitizer = sanitizer
        self.rasterizer = rasterizer
        self.processing_timeout = settings.PROCESSING_TIMEOUT_SECONDS
        # Limita cuantas sanitizaciones/rasterizaciones corren a la vez.
        self._semaphore = asyncio.Semaphore(max(1, settings.RASTERIZE_CONCURRENCY))

    async def execute(self, identity: str, url, width=None, height=None) -> PipelineResult:
        """
        Procesa una peticion completa.

        Parametros:
            identity (str): Identidad del cliente (para el rate limiter).
            url, width, height: Parametros crudos del query string.

        Retorna:
            PipelineResult con el PNG.

        Raises:
            RasterizeError: exactamente una clase de la taxonomia.
        """
        started = time.perf_counter()
        stage = PipelineStage.START
        try:
            stage = PipelineStage.RATE_CHECK
            decision = await self.limiter.check_and_consume(identity)
            if not decision.admitted:
                raise RateLimited(
                    f"Rate limit exceeded: {decision.limit} requests per "
                    f"{self.limiter.window_seconds}s",
                    decision.retry_after,
                )

            stage = PipelineStage.INPUT_VALIDATE
            request = parse_raster_request(url, width, height, self.settings)

            stage = PipelineStage.URL_VALIDATE
            (await self.guard.validate(request.url)).raise_if_denied()

            stage = PipelineStage.CACHE_LOOKUP
            signature = compute_signature(request.url, request.width, request.height)
            entry = await self.cache.get(signature)

            if entry is not None:
                stage = PipelineStage.HIT_RETURN
                logger.info("Cache hit for %s (%s)", request.url, entry.outcome.value)
                if not entry.is_success:
                    raise entry.to_error()
                result = PipelineResult(entry.payload, request.width, request.height, entry.content_type)
            else:
                logger.info("Cache miss for %s at %dx%d", request.url, request.width, request.height)
                stage = PipelineStage.FETCH
                result = await self._produce(request, signature)

            stage = PipelineStage.RESPOND
            logger.info(
                "Served %s at %dx%d (%d bytes) in %.0fms",
                request.url,
                request.width,
                request.height,
                len(result.png),
                (time.perf_counter() - started) * 1000,
            )
            return result
        except RasterizeError as e:
            # Las etapas FETCH en adelante registran su propia falla.
            if stage not in (PipelineStage.HIT_RETURN, PipelineStage.FETCH):
                logger.warning("Stage %s failed with %s: %s", stage.value, type(e).__name__, e.message)
            raise
        except Exception as e:
            logger.exception("Unexpected error at stage %s", stage.value)
            raise InternalFault("Internal server error") from e

    async def _produce(self, request: RasterRequest, signature: str) -> PipelineResult:
        """Etapas FETCH..CACHE_STORE. Guarda en cache el exito o la falla."""
        stage = PipelineStage.FETCH
        try:
            fetched = await self.fetcher.fetch(request.url)

            stage = PipelineStage.CONTENT_CHECK
            if fetched.kind is not ContentKind.SVG:
                raise NotSvgSource("URL does not point to an SVG document")

            # Un solo presupuesto de tiempo para sanitizar + rasterizar.
            deadline = time.monotonic() + self.processing_timeout

            stage = PipelineStage.SANITIZE
            cleaned = await self._offload(
                deadline, SanitizationRejected, self.sanitizer.sanitize, fetched.content
            )

            stage = PipelineStage.RASTERIZE
            png = await self._offload(
                deadline,
                RasterizationFailed,
                self.rasterizer.rasterize,
                cleaned,
                request.width,
                request.height,
            )
        except RasterizeError as e:
            logger.warning("Stage %s failed with %s: %s", stage.value, type(e).__name__, e.message)
            if e.cacheable:
                await self.cache.put(signature, CacheEntry.failure(e))
            raise

        stage = PipelineStage.CACHE_STORE
        await self.cache.put(signature, CacheEntry.success(png))
        return PipelineResult(png, request.width, request.height)

    async def _offload(self, deadline: float, timeout_error: type, func, *args):
        """
        Ejecuta una funcion CPU-bound en un thread, con semaforo y timeout.

        El thread no se puede matar: si vence el timeout, la corrutina
        deja de esperarlo y el resultado tardio se descarta.
        """
        async with self._semaphore:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise timeout_error(f"Processing timed out after {self.processing_timeout:g}s")
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=remaining)
            except asyncio.TimeoutError:
                raise timeout_error(
                    f"Processing timed out after {self.processing_timeout:g}s"
                ) from None
