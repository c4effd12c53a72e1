"""
Modulo de configuracion centralizada del gateway de rasterizacion.

Este archivo define TODAS las constantes y configuraciones que el servicio
necesita para funcionar: puerto, almacen compartido (Redis o memoria),
limites de dimensiones, politica de rate limiting, proxies de confianza,
timeouts y techos de memoria.

1. **Configuracion por entorno:** Usamos variables de entorno (os.getenv)
   para que la misma aplicacion pueda correr en desarrollo, staging y
   produccion con diferentes valores SIN cambiar el codigo fuente.
   Ejemplo: en desarrollo STORE_URL es "memory://", pero en produccion
   apunta a un Redis compartido ("redis://redis:6379/0").

2. **Seguridad:** Los rangos de red prohibidos y los proxies de confianza
   son configuracion, no codigo. Un operador puede agregar el rango de su
   VPC a DENY_NETWORKS sin tocar el guardia de URLs.

Patron de diseno: **Singleton implicito**
La instancia `settings` se crea UNA sola vez al importar este modulo.
Los tests NO la modifican: crean su propia instancia de Settings y
sobreescriben los atributos que necesitan, y la pasan a create_app().
"""

import os

# Version reportada por /health.
VERSION = "1.0.0"


def _get_int(key: str, default: int) -> int:
    """
    Lee un entero de una variable de entorno.

    Si la variable no existe o esta vacia, retorna el default. Si existe
    pero no es un entero valido, lanzamos ValueError: preferimos que el
    proceso NO arranque a que arranque con un limite de seguridad
    silenciosamente distinto al que el operador quiso poner.
    """
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {key} value: {raw!r}") from None


def _get_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid {key} value: {raw!r}") from None


def _get_list(key: str, default: str = "") -> list[str]:
    """
    Lee una lista separada por comas.

    Ejemplo: TRUSTED_PROXIES="10.0.0.0/8, 172.16.0.1"
        -> ["10.0.0.0/8", "172.16.0.1"]
    Los elementos vacios se descartan, asi "" produce [].
    """
    raw = os.getenv(key, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings:
    """
    Clase que encapsula toda la configuracion del servicio.

    Usamos una clase (en vez de simples variables globales) porque:
    - Agrupa logicamente todas las configuraciones relacionadas.
    - Permite que en tests podamos crear una instancia con valores custom:
          test_settings = Settings()
          test_settings.RATE_LIMIT_REQUESTS = 3
    - Es mas facil de documentar y mantener.
    """

    # ---------- Servidor ----------

    # Puerto donde escucha uvicorn (ver __main__.py).
    PORT: int = _get_int("PORT", 3000)

    # Nivel de logging: DEBUG, INFO, WARNING, ERROR.
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Origenes permitidos para CORS (mismo esquema que el resto de la app).
    CORS_ORIGINS: list[str] = _get_list("CORS_ORIGINS", "*")

    # ---------- Almacen compartido (cache + contadores) ----------

    # "memory://" usa un almacen en proceso (desarrollo y tests).
    # "redis://host:6379/0" comparte cache y contadores entre replicas.
    # REDIS_URL se acepta por compatibilidad con despliegues existentes.
    STORE_URL: str = os.getenv("STORE_URL") or os.getenv("REDIS_URL") or "memory://"

    # Maximo de entradas en el almacen en memoria (ignorado con Redis).
    MEMORY_STORE_MAX_ITEMS: int = _get_int("MEMORY_STORE_MAX_ITEMS", 1024)

    # ---------- Dimensiones ----------

    # Rango valido para width/height: [MIN_DIMENSION, MAX_DIMENSION].
    # Un PNG RGBA de 4096x4096 ocupa 64 MB descomprimido, por eso el
    # maximo es configurable y no "lo que pida el cliente".
    MIN_DIMENSION: int = 32
    MAX_DIMENSION: int = _get_int("MAX_DIMENSION", 4096)
    DEFAULT_DIMENSION: int = 1024

    # ---------- Rate limiting ----------

    # Ventana fija: RATE_LIMIT_REQUESTS peticiones cada
    # RATE_LIMIT_WINDOW_SECONDS segundos por identidad de cliente.
    RATE_LIMIT_REQUESTS: int = _get_int("RATE_LIMIT_REQUESTS", 60)
    RATE_LIMIT_WINDOW_SECONDS: int = _get_int("RATE_LIMIT_WINDOW_SECONDS", 60)

    # Lista blanca de proxies (IPs o CIDRs) cuyo X-Forwarded-For creemos.
    # Vacia = nunca confiamos en headers reenviados.
    TRUSTED_PROXIES: list[str] = _get_list("TRUSTED_PROXIES")

    # ---------- Guardia de URLs (SSRF) ----------

    # Puertos destino permitidos. Todo lo demas (22, 6379, 5432...) se
    # rechaza aunque el host sea publico.
    ALLOWED_PORTS: list[int] = [
        int(port) for port in _get_list("ALLOWED_PORTS", "80,443,8080,8443")
    ]

    # Rangos prohibidos ademas de loopback/privados/link-local/etc.
    # 169.254.169.254: metadata de AWS/GCP/Azure/DigitalOcean.
    # 100.64.0.0/10: espacio compartido (CGNAT), incluye la metadata de
    #   Alibaba Cloud (100.100.100.200).
    # fd00:ec2::254: metadata de AWS por IPv6.
    DENY_NETWORKS: list[str] = [
        "0.0.0.0/8",
        "100.64.0.0/10",
        "169.254.169.254/32",
        "192.0.0.0/24",
        "198.18.0.0/15",
        "fd00:ec2::254/128",
    ] + _get_list("DENY_NETWORKS")

    # ---------- Descarga ----------

    FETCH_TIMEOUT_SECONDS: float = _get_float("FETCH_TIMEOUT_SECONDS", 10.0)

    # Techo de bytes del SVG descargado: 1 MB.
    MAX_SVG_BYTES: int = _get_int("MAX_SVG_BYTES", 1024 * 1024)

    MAX_REDIRECTS: int = _get_int("MAX_REDIRECTS", 5)

    # ---------- Procesamiento ----------

    # Tiempo maximo para sanitizar + rasterizar una peticion.
    PROCESSING_TIMEOUT_SECONDS: float = _get_float("PROCESSING_TIMEOUT_SECONDS", 20.0)

    # Techos de memoria de los resultados intermedios y finales.
    MAX_SANITIZED_BYTES: int = _get_int("MAX_SANITIZED_BYTES", 2 * 1024 * 1024)
    MAX_PNG_BYTES: int = _get_int("MAX_PNG_BYTES", 32 * 1024 * 1024)

    # Rasterizaciones simultaneas (cada una usa CPU y memoria de cairo).
    RASTERIZE_CONCURRENCY: int = _get_int("RASTERIZE_CONCURRENCY", os.cpu_count() or 2)

    # ---------- Cache ----------

    # Exito: 24 horas. Falla: 60 segundos, para que un error transitorio
    # del servidor origen no "envenene" la URL por mucho tiempo.
    SUCCESS_TTL_SECONDS: int = _get_int("SUCCESS_TTL_SECONDS", 24 * 60 * 60)
    FAILURE_TTL_SECONDS: int = _get_int("FAILURE_TTL_SECONDS", 60)


# Instancia unica de configuracion (patron Singleton implicito).
settings = Settings()
