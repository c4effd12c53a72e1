"""
Punto de entrada principal de la aplicacion FastAPI.

Aqui se:
1. Configura el logging (una sola vez, al nivel LOG_LEVEL).
2. Crea la instancia de FastAPI y sus middlewares (CORS).
3. Construye, al arrancar (lifespan), todos los servicios compartidos y
   los guarda en app.state.
4. Registra el handler que convierte cualquier RasterizeError en una
   respuesta HTTP (PNG/JSON/texto segun el cliente).
5. Registra las rutas.

Arquitectura:
-------------
    main.py (punto de entrada)
        |
        +-- routes/           (Controladores: reciben HTTP requests)
        |    +-- rasterize.py   GET /rasterize-svg
        |    +-- health.py      GET /health
        |
        +-- pipeline.py       (Orquestador: maquina de estados)
        |
        +-- services/         (Logica de negocio, un servicio por etapa)
        |    +-- client_identity.py, rate_limiter.py, url_guard.py
        |    +-- cache.py, store.py
        |    +-- fetcher.py, content_kind.py, sanitizer.py, rasterizer.py
        |    +-- negotiator.py
        |
        +-- models/schemas.py (Modelos Pydantic de las respuestas JSON)
        +-- errors.py         (Taxonomia de errores)
        +-- config.py         (Configuracion centralizada)

Flujo de una peticion:
    Cliente -> CORS -> /rasterize-svg -> Pipeline -> Negotiator -> Respuesta

Por que create_app() y no un `app` global construido a mano?
-------------------------------------------------------------
Los tests necesitan apps con configuracion distinta (limite de 3
peticiones, resolvedor DNS falso, transporte HTTP simulado). create_app()
recibe esas piezas; el `app` del final del archivo es la app real que
arranca uvicorn.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request

from svg_gateway.config import VERSION, Settings, settings as default_settings
from svg_gateway.errors import RasterizeError
from svg_gateway.pipeline import RasterizePipeline
from svg_gateway.routes.health import router as health_router
from svg_gateway.routes.rasterize import router as rasterize_router
from svg_gateway.services.cache import ResultCache
from svg_gateway.services.client_identity import ClientIdentifier
from svg_gateway.services.fetcher import SvgFetcher
from svg_gateway.services.negotiator import negotiate, render_error
from svg_gateway.services.rasterizer import SvgRasterizer
from svg_gateway.services.rate_limiter import RateLimiter
from svg_gateway.services.sanitizer import SvgSanitizer
from svg_gateway.services.store import create_backing_store
from svg_gateway.services.url_guard import UrlAdmissionGuard

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def rasterize_error_handler(request: Request, exc: RasterizeError):
    """
    Convierte un RasterizeError en respuesta, en el formato que pidio el
    cliente. Registrado con add_exception_handler, igual que se registra
    cualquier handler de errores de la app.
    """
    return render_error(negotiate(request), exc)


def create_app(
    settings: Settings | None = None,
    resolver=None,
    transport: httpx.AsyncBaseTransport | None = None,
    store=None,
) -> FastAPI:
    """
    Construye la aplicacion.

    Parametros:
        settings (Settings | None): Configuracion. Default: la del entorno.
        resolver: Resolvedor DNS async (host, port) -> [ips]. Default: el del sistema.
        transport: Transporte httpx para las descargas (tests: MockTransport).
        store (BackingStore | None): Almacen ya creado. Default: segun STORE_URL.
    """
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ---------- Arranque: estado compartido explicito ----------
        backing_store = store or create_backing_store(
            settings.STORE_URL, settings.MEMORY_STORE_MAX_ITEMS
        )
        guard = UrlAdmissionGuard.from_settings(settings, resolver=resolver)
        # follow_redirects=False: el Fetcher sigue los redirects a mano
        # para pasar cada salto por el guardia.
        client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(settings.FETCH_TIMEOUT_SECONDS),
            follow_redirects=False,
        )

        app.state.settings = settings
        app.state.store = backing_store
        app.state.client_identifier = ClientIdentifier(settings.TRUSTED_PROXIES)
        app.state.pipeline = RasterizePipeline(
            settings,
            guard=guard,
            limiter=RateLimiter.from_settings(backing_store.counters, settings),
            cache=ResultCache.from_settings(backing_store.kv, settings),
            fetcher=SvgFetcher.from_settings(client, guard, settings),
            sanitizer=SvgSanitizer.from_settings(settings),
            rasterizer=SvgRasterizer.from_settings(settings),
        )
        logger.info(
            "svg-gateway %s started (store=%s, limit=%d/%ds)",
            VERSION,
            backing_store.url.split("://", 1)[0],
            settings.RATE_LIMIT_REQUESTS,
            settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        try:
            yield
        finally:
            # ---------- Apagado: cerrar conexiones ----------
            await client.aclose()
            await backing_store.close()

    app = FastAPI(title="SVG Rasterization Gateway", version=VERSION, lifespan=lifespan)

    app.add_exception_handler(RasterizeError, rasterize_error_handler)

    # GET es el unico metodo que exponemos; el navegador puede usar la
    # respuesta directamente en un <img> o via fetch().
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    app.include_router(rasterize_router)
    app.include_router(health_router)
    return app


app = create_app()
