"""
Cache de resultados del pipeline.

Guardamos el RESULTADO de procesar (url, width, height): tanto el PNG de
un exito como el error de una falla. Asi una URL popular se descarga y
rasteriza una sola vez cada 24 horas, y una URL rota no se vuelve a
descargar en cada peticion durante el minuto siguiente.

Llave de cache (CacheSignature)
-------------------------------
    "svg:" + SHA-256( json([url_normalizada, width, height]) )

- Deterministica y estable entre reinicios (no usamos hash() de Python,
  que cambia por proceso con PYTHONHASHSEED).
- SHA-256 hace que las colisiones sean despreciables y que la llave
  tenga largo fijo aunque la URL mida 8 KB.
- json.dumps evita ambiguedades: ("a", 1, 23) y ("a1", 2, 3) producen
  textos distintos.

TTL diferenciado
----------------
    Exito -> 24 horas.
    Falla -> 60 segundos. Un error transitorio del servidor origen no debe
             "envenenar" la URL por mucho tiempo.

Transparencia
-------------
Una falla servida desde cache debe producir EXACTAMENTE la misma
respuesta (status, error_type, mensaje) que la falla original. El cliente
solo podria notar la diferencia por la latencia.
"""

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

from svg_gateway.errors import RasterizeError, error_from_descriptor

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "svg:"
DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """
    Forma canonica de una URL para la llave de cache.

    - Esquema y host en minusculas ("HTTP://Example.COM" == "http://example.com").
    - Sin el puerto por defecto (":443" en https).
    - Path vacio -> "/".
    - Sin fragmento ("#abc" nunca viaja al servidor).
    El query string se conserva tal cual: "?v=1" y "?v=2" son recursos distintos.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    netloc = host if port in (None, DEFAULT_PORTS.get(scheme)) else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def compute_signature(url: str, width: int, height: int) -> str:
    """Llave de cache para (url, width, height)."""
    canonical = json.dumps([normalize_url(url), int(width), int(height)], separators=(",", ":"))
    return SIGNATURE_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CacheEntry:
    """
    Una entrada de cache: el resultado de un pipeline ya ejecutado.

    Atributos:
        outcome (Outcome): SUCCESS o FAILURE.
        payload: bytes del PNG (exito) o descriptor del error (falla).
        content_type (str): "image/png" en exitos.
        created_at (float): Epoch de creacion.
    """

    outcome: Outcome
    payload: bytes | dict
    content_type: str
    created_at: float = field(default_factory=time.time)

    @classmethod
    def success(cls, png: bytes, content_type: str = "image/png") -> "CacheEntry":
        return cls(outcome=Outcome.SUCCESS, payload=png, content_type=content_type)

    @classmethod
    def failure(cls, error: RasterizeError) -> "CacheEntry":
        return cls(
            outcome=Outcome.FAILURE,
            payload=error.to_descriptor(),
            content_type="application/json",
        )

    @property
    def is_success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_error(self) -> RasterizeError:
        """Reconstruye el error original de una entrada FAILURE."""
        return error_from_descriptor(self.payload)

    def to_bytes(self) -> bytes:
        """
        Serializa la entrada a JSON para el backing store.

        Los bytes del PNG van en base64 porque JSON no tiene tipo binario.
        """
        if self.is_success:
            payload = base64.b64encode(self.payload).decode("ascii")
        else:
            payload = self.payload
        return json.dumps(
            {
                "outcome": self.outcome.value,
                "payload": payload,
                "content_type": self.content_type,
                "created_at": self.created_at,
            }
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CacheEntry":
        """
        Deserializa una entrada. Lanza ValueError si los datos no son validos.
        """
        try:
            data = json.loads(raw)
            outcome = Outcome(data["outcome"])
            payload = data["payload"]
            if outcome is Outcome.SUCCESS:
                payload = base64.b64decode(payload, validate=True)
            elif not isinstance(payload, dict):
                raise ValueError("failure payload must be an object")
            return cls(
                outcome=outcome,
                payload=payload,
                content_type=data["content_type"],
                created_at=float(data["created_at"]),
            )
        # json.JSONDecodeError y binascii.Error son subclases de ValueError.
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Corrupt cache entry: {e}") from e


class ResultCache:
    """
    Cache de resultados sobre el KV del BackingStore.

    Atributos:
        kv: MemoryKeyValueStore o RedisKeyValueStore.
        success_ttl (int): TTL de los exitos en segundos.
        failure_ttl (int): TTL de las fallas en segundos.
    """

    def __init__(self, kv, success_ttl: int = 86400, failure_ttl: int = 60):
        self.kv = kv
        self.success_ttl = success_ttl
        self.failure_ttl = failure_ttl

    @classmethod
    def from_settings(cls, kv, settings) -> "ResultCache":
        return cls(
            kv,
            success_ttl=settings.SUCCESS_TTL_SECONDS,
            failure_ttl=settings.FAILURE_TTL_SECONDS,
        )

    def ttl_for(self, entry: CacheEntry) -> int:
        return self.success_ttl if entry.is_success else self.failure_ttl

    async def get(self, signature: str) -> CacheEntry | None:
        """
        Busca una entrada. Retorna None si no existe.

        Si el almacen falla o la entrada esta corrupta, lo registramos y
        respondemos como un miss: el pipeline se ejecuta de nuevo, que es
        mas lento pero correcto.
        """
        try:
            raw = await self.kv.get(signature)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", signature, e)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_bytes(raw)
        except ValueError as e:
            logger.warning("Discarding cache entry %s: %s", signature, e)
            return None

    async def put(self, signature: str, entry: CacheEntry, ttl: int | None = None) -> None:
        """
        Guarda una entrada. Si dos peticiones escriben la misma llave,
        gana la ultima: ambos resultados son igual de validos.
        """
        if ttl is None:
            ttl = self.ttl_for(entry)
        try:
            await self.kv.set(signature, entry.to_bytes(), ttl)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", signature, e)
