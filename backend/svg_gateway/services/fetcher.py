"""
Descarga de SVGs desde URLs ya admitidas por el guardia.

Limites que aplicamos a CADA descarga:
    1. Timeout total (default 10s) que cubre conexion + transferencia. Si
       vence, la tarea se cancela y el context de streaming cierra el
       socket: no quedan conexiones colgadas.
    2. Techo de bytes (default 1 MB). Primero miramos Content-Length, y
       ademas contamos bytes MIENTRAS llegan: si el servidor miente o no
       envia Content-Length, abortamos en cuanto pasamos el limite, sin
       guardar en memoria lo que sobra.
    3. Re-verificacion SSRF justo antes de conectar: volvemos a resolver
       el host, verificamos TODAS las IPs y nos conectamos a la IP
       verificada (pinning), enviando el Host original y el SNI correcto
       para que TLS valide el certificado contra el nombre real.
    4. Redirects manuales (default max 5): cada salto pasa de nuevo por el
       guardia. Un redirect a http://127.0.0.1/ se rechaza igual que si
       el cliente lo hubiera pedido directamente.

Usamos httpx (cliente HTTP async) en modo streaming.
"""

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx

from svg_gateway.errors import PayloadTooLarge, UpstreamFetchError
from svg_gateway.services.content_kind import ContentKind, classify_content
from svg_gateway.services.url_guard import AdmissionVerdict, UrlAdmissionGuard

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "svg-gateway/1.0 (+rasterize-svg)",
    "Accept": "image/svg+xml, application/xml;q=0.9, */*;q=0.5",
}


@dataclass(frozen=True)
class FetchResult:
    """
    Resultado de una descarga exitosa.

    Atributos:
        content (bytes): Cuerpo completo (<= max_bytes).
        content_type (str): Header Content-Type del origen ("" si no vino).
        url (str): URL final, despues de seguir redirects.
        kind (ContentKind): Clasificacion SVG / NOT_SVG del contenido.
    """

    content: bytes
    content_type: str
    url: str
    kind: ContentKind


@dataclass(frozen=True)
class _Redirect:
    location: str


class SvgFetcher:
    """
    Descargador con limites de tiempo, tamano y destino.

    Atributos:
        client (httpx.AsyncClient): Cliente compartido (connection pooling).
        guard (UrlAdmissionGuard): Guardia usado para re-verificar al conectar.
        timeout (float): Segundos totales por descarga.
        max_bytes (int): Techo de bytes del cuerpo.
        max_redirects (int): Saltos de redirect permitidos.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        guard: UrlAdmissionGuard,
        timeout: float = 10.0,
        max_bytes: int = 1024 * 1024,
        max_redirects: int = 5,
    ):
        self.client = client
        self.guard = guard
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects

    @classmethod
    def from_settings(cls, client, guard, settings) -> "SvgFetcher":
        return cls(
            client,
            guard,
            timeout=settings.FETCH_TIMEOUT_SECONDS,
            max_bytes=settings.MAX_SVG_BYTES,
            max_redirects=settings.MAX_REDIRECTS,
        )

    async def fetch(self, url: str) -> FetchResult:
        """
        Descarga `url` respetando todos los limites.

        Raises:
            AdmissionDenied: si la URL (o un redirect) resuelve a un destino prohibido.
            PayloadTooLarge: si el cuerpo supera max_bytes.
            UpstreamFetchError: timeout, error de red, status no-2xx.
        """
        try:
            return await asyncio.wait_for(self._fetch_with_redirects(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise UpstreamFetchError(f"Timed out after {self.timeout:g}s fetching SVG") from None

    async def _fetch_with_redirects(self, url: str) -> FetchResult:
        current = url
        for _hop in range(self.max_redirects + 1):
            # Resolucion + verificacion en el momento de conectar.
            verdict = (await self.guard.validate(current)).raise_if_denied()
            outcome = await self._request(current, verdict)
            if isinstance(outcome, _Redirect):
                logger.info("Following redirect %s -> %s", current, outcome.location)
                current = outcome.location
                continue
            return outcome
        raise UpstreamFetchError(f"Too many redirects (max {self.max_redirects})")

    def _build_request(self, url: str, verdict: AdmissionVerdict) -> httpx.Request:
        original = httpx.URL(url)
        # Nos conectamos a la IP que acabamos de verificar (la primera que
        # devolvio el resolvedor), no al nombre: asi el DNS no puede
        # cambiar entre la verificacion y la conexion.
        pinned = original.copy_with(host=verdict.addresses[0])

        host_header = f"[{verdict.host}]" if ":" in verdict.host else verdict.host
        if original.port is not None:
            host_header = f"{host_header}:{original.port}"

        extensions = {}
        if original.scheme == "https":
            # SNI + validacion del certificado contra el hostname real.
            extensions["sni_hostname"] = verdict.host

        return self.client.build_request(
            "GET",
            pinned,
            headers={**DEFAULT_HEADERS, "Host": host_header},
            extensions=extensions,
        )

    async def _request(self, url: str, verdict: AdmissionVerdict):
        request = self._build_request(url, verdict)
        try:
            response = await self.client.send(request, stream=True, follow_redirects=False)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info("Fetch of %s failed: %r", url, e)
            raise UpstreamFetchError(f"Failed to fetch SVG: {type(e).__name__}") from e

        try:
            if response.is_redirect:
                location = response.headers.get("location")
                if not location:
                    raise UpstreamFetchError("Upstream redirect without Location header")
                return _Redirect(urljoin(url, location))

            if not response.is_success:
                raise UpstreamFetchError(f"Failed to fetch SVG: HTTP {response.status_code}")

            # --- Limite 1: Content-Length declarado ---
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise PayloadTooLarge(
                    f"SVG file too large: {declared} bytes (max {self.max_bytes})"
                )

            # --- Limite 2: bytes reales mientras llegan ---
            chunks = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > self.max_bytes:
                    raise PayloadTooLarge(f"Response too large: exceeded {self.max_bytes} bytes")
                chunks.append(chunk)
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"Failed to fetch SVG: {type(e).__name__}") from e
        finally:
            await response.aclose()

        content = b"".join(chunks)
        content_type = response.headers.get("content-type", "")
        logger.debug("Fetched %d bytes from %s (content-type %r)", len(content), url, content_type)
        return FetchResult(
            content=content,
            content_type=content_type,
            url=url,
            kind=await asyncio.to_thread(classify_content, content, content_type),
        )
