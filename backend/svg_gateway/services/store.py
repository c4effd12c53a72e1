"""
Almacen compartido: cache de resultados + contadores del rate limiter.

Todo el estado mutable del servicio vive AQUI, en un objeto explicito que
se crea al arrancar la app (ver main.py, lifespan) y se pasa por
referencia a la cache y al rate limiter. No hay diccionarios globales
escondidos en los modulos.

Dos backends, elegidos por STORE_URL:

    memory://            -> En proceso. Desarrollo, tests, una sola replica.
    redis://host:6379/0  -> Compartido entre replicas del servicio.

Operaciones que cada backend garantiza atomicas:
    - get / set con TTL de una entrada de cache (KV).
    - incremento del contador de una ventana (lo hace la libreria
      `limits`, la misma que usa SlowAPI por debajo).
"""

import logging
import threading

import redis.asyncio as redis
from cachetools import TLRUCache
from limits.storage import storage_from_string

logger = logging.getLogger(__name__)


class MemoryKeyValueStore:
    """
    KV en memoria con TTL por entrada.

    Usamos TLRUCache de cachetools: como TTLCache, pero el tiempo de vida
    se calcula POR ENTRADA con la funcion `ttu` (time-to-use). Lo
    necesitamos porque exitos y fallas tienen TTLs distintos (24h vs 60s).
    Cuando se llena, descarta la entrada usada hace mas tiempo (LRU).
    """

    def __init__(self, max_items: int = 1024):
        # El valor guardado es la tupla (bytes, ttl_en_segundos).
        self._data = TLRUCache(maxsize=max_items, ttu=lambda _key, value, now: now + value[1])
        # cachetools no es thread-safe; el lock protege contra peticiones
        # atendidas desde threads distintos.
        self._lock = threading.Lock()

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            item = self._data.get(key)
        return None if item is None else item[0]

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        with self._lock:
            self._data[key] = (value, ttl)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


class RedisKeyValueStore:
    """KV sobre Redis (redis-py asyncio). SET con EX da el TTL atomicamente."""

    def __init__(self, url: str, client=None):
        self.client = client or redis.from_url(url)

    async def get(self, key: str) -> bytes | None:
        return await self.client.get(key)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self.client.set(key, value, ex=ttl)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class BackingStore:
    """
    Handle unico del estado compartido.

    Atributos:
        kv: Almacen de entradas de cache (MemoryKeyValueStore o RedisKeyValueStore).
        counters: Storage async de la libreria `limits` para los contadores
            de ventana fija del rate limiter.
        url (str): STORE_URL con el que se creo.
    """

    def __init__(self, kv, counters, url: str = "memory://"):
        self.kv = kv
        self.counters = counters
        self.url = url

    async def ping(self) -> bool:
        """True si el KV y los contadores responden. Usado por /health."""
        try:
            return bool(await self.kv.ping()) and bool(await self.counters.check())
        except Exception as e:
            logger.error("Backing store ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self.kv.close()


def create_backing_store(url: str, memory_max_items: int = 1024) -> BackingStore:
    """
    Crea el almacen segun el esquema de STORE_URL.

    Ejemplos:
        create_backing_store("memory://")
        create_backing_store("redis://redis:6379/0")

    Raises:
        ValueError: si el esquema no es memory, redis ni rediss.
    """
    scheme = url.split("://", 1)[0].lower()

    if scheme == "memory":
        return BackingStore(
            kv=MemoryKeyValueStore(memory_max_items),
            counters=storage_from_string("async+memory://"),
            url=url,
        )

    if scheme in ("redis", "rediss"):
        # implementation="redispy": `limits` usa redis-py (la misma
        # libreria que nuestro KV) en vez de coredis.
        return BackingStore(
            kv=RedisKeyValueStore(url),
            counters=storage_from_string(f"async+{url}", implementation="redispy"),
            url=url,
        )

    raise ValueError(f"Unsupported STORE_URL scheme: {scheme!r}")
