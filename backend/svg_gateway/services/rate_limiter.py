"""
Rate limiting por ventana fija (fixed window).

Por que necesitamos rate limiting?
----------------------------------
Cada peticion a /rasterize-svg puede costar: una descarga de hasta 1 MB,
un parseo XML y una rasterizacion de hasta 4096x4096 pixeles. Sin limite,
un solo cliente podria saturar la CPU del servicio, o usarlo para
"amplificar" trafico contra un tercero.

Como funciona la ventana fija?
------------------------------
Cada identidad (IP del cliente, ver client_identity.py) tiene un contador
por ventana de W segundos (default 60). Cada peticion incrementa el
contador; si despues del incremento supera N (default 60), se rechaza.

    t=0s   peticion 1    -> contador=1   OK
    ...
    t=40s  peticion 60   -> contador=60  OK
    t=41s  peticion 61   -> contador=61  RECHAZADA (retry_after=19s)
    t=42s  peticion 62   -> contador=62  RECHAZADA (el rechazo TAMBIEN cuenta)
    t=60s  la ventana expira, el contador desaparece
    t=61s  peticion 63   -> contador=1   OK

Por que los rechazos tambien incrementan? Para que martillar el endpoint
no de "reintentos gratis" dentro de la misma ventana.

Trade-off conocido: rafagas en el borde
---------------------------------------
Como las ventanas no se solapan, un cliente puede hacer N peticiones al
final de una ventana y N al principio de la siguiente: hasta 2N en pocos
segundos. Lo aceptamos a cambio de la simplicidad (un solo contador
atomico por identidad, sin leaky bucket).

Usamos la libreria `limits` (el motor de SlowAPI) con su estrategia
FixedWindowRateLimiter sobre el storage del BackingStore: el incremento
es atomico tanto en memoria como en Redis.
"""

import logging
import math
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.aio.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    """
    Resultado de check_and_consume().

    Atributos:
        admitted (bool): True si la peticion puede continuar.
        limit (int): Capacidad N de la ventana.
        remaining (int): Peticiones que quedan en la ventana actual.
        retry_after (int): Segundos hasta el fin de la ventana. 0 si admitted.
    """

    admitted: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """
    Limitador de ventana fija por identidad.

    Atributos:
        requests (int): Capacidad N por ventana.
        window_seconds (int): Duracion W de la ventana.
    """

    NAMESPACE = "rasterize-svg"

    def __init__(self, storage, requests: int = 60, window_seconds: int = 60):
        self.requests = requests
        self.window_seconds = window_seconds
        # "N por cada W segundos": RateLimitItemPerSecond(amount, multiples).
        self.item = RateLimitItemPerSecond(requests, window_seconds)
        self.strategy = FixedWindowRateLimiter(storage)

    @classmethod
    def from_settings(cls, storage, settings) -> "RateLimiter":
        return cls(
            storage,
            requests=settings.RATE_LIMIT_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )

    def _seconds_until(self, reset_time: float) -> int:
        # Redondeamos hacia arriba: decir "reintenta en 0s" cuando faltan
        # 0.4s provocaria otro rechazo inmediato.
        remaining = math.ceil(reset_time - time.time())
        return min(max(remaining, 1), self.window_seconds)

    async def check_and_consume(self, identity: str) -> RateDecision:
        """
        Incrementa el contador de la identidad y decide si admitirla.

        Si el almacen no responde, la peticion se ADMITE (fail-open) y se
        deja un warning en el log: preferimos seguir sirviendo a que una
        caida de Redis tumbe todo el servicio.
        """
        try:
            admitted = await self.strategy.hit(self.item, self.NAMESPACE, identity)
            reset_time, remaining = await self.strategy.get_window_stats(
                self.item, self.NAMESPACE, identity
            )
        except Exception as e:
            logger.warning("Rate limit store unavailable, admitting %s: %s", identity, e)
            return RateDecision(admitted=True, limit=self.requests, remaining=self.requests)

        if admitted:
            return RateDecision(admitted=True, limit=self.requests, remaining=remaining)

        retry_after = self._seconds_until(reset_time)
        logger.warning("Rate limit exceeded for %s, retry after %ss", identity, retry_after)
        return RateDecision(
            admitted=False, limit=self.requests, remaining=0, retry_after=retry_after
        )
