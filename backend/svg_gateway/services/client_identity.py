"""
Identificacion de clientes para el rate limiting.

El rate limiter necesita una "llave" estable por cliente. La opcion obvia
es la IP del cliente, pero detras de un reverse proxy (Nginx, un load
balancer de la nube) la IP que vemos es la DEL PROXY, y la del cliente
viene en el header X-Forwarded-For:

    X-Forwarded-For: <cliente>, <proxy1>, <proxy2>

Problema: ese header lo puede escribir CUALQUIERA. Si lo creyeramos
siempre, un atacante enviaria un valor distinto en cada peticion y
tendria cuota infinita.

Solucion: lista blanca de proxies de confianza
-----------------------------------------------
Solo leemos X-Forwarded-For si la conexion directa viene de un proxy que
esta en TRUSTED_PROXIES. Y aun asi, recorremos la cadena de DERECHA a
IZQUIERDA saltando nuestros propios proxies: la primera IP que NO es un
proxy de confianza es la del cliente. Todo lo que esta a su izquierda lo
escribio el cliente y no vale nada.

    peer = 10.0.0.2 (nuestro LB, de confianza)
    X-Forwarded-For: 6.6.6.6, 203.0.113.7, 10.0.0.9
                     ^falso   ^cliente     ^otro proxy nuestro
    identidad -> "203.0.113.7"
"""

import ipaddress
from typing import Iterable

# get_remote_address retorna request.client.host (la IP de la conexion
# TCP directa), o "127.0.0.1" si no hay informacion de cliente.
# Es la misma funcion que SlowAPI usa como key_func por defecto.
from slowapi.util import get_remote_address
from starlette.requests import Request

FORWARDED_FOR_HEADER = "x-forwarded-for"


def _parse_ip(value: str):
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


class ClientIdentifier:
    """
    Deriva la identidad de un cliente a partir de la peticion HTTP.

    Atributos:
        trusted_proxies (tuple): Redes (ip_network) cuyos headers
            X-Forwarded-For aceptamos. Vacia = nunca confiamos.
    """

    def __init__(self, trusted_proxies: Iterable[str] = ()):
        self.trusted_proxies = tuple(
            ipaddress.ip_network(proxy, strict=False) for proxy in trusted_proxies
        )

    def is_trusted(self, address) -> bool:
        if address is None:
            return False
        return any(
            address.version == network.version and address in network
            for network in self.trusted_proxies
        )

    def identify(self, request: Request) -> str:
        """
        Retorna la identidad (una IP en texto) del cliente de la peticion.
        """
        peer = get_remote_address(request)
        peer_ip = _parse_ip(peer)

        # Sin lista blanca, o conexion directa desde fuera de ella:
        # la IP directa es la identidad y los headers se ignoran.
        if not self.trusted_proxies or not self.is_trusted(peer_ip):
            return peer

        header = request.headers.get(FORWARDED_FOR_HEADER)
        if not header:
            return peer

        # Recorremos de derecha a izquierda. "last_trusted" es el ultimo
        # salto de confianza visto: si la cadena se vuelve ilegible, la
        # identidad es ese salto (no podemos ir mas alla con seguridad).
        last_trusted = peer
        for entry in reversed(header.split(",")):
            hop = _parse_ip(entry)
            if hop is None:
                return last_trusted
            if not self.is_trusted(hop):
                return str(hop)
            last_trusted = str(hop)

        # Toda la cadena son proxies nuestros: el mas a la izquierda es
        # lo mas cercano al cliente que conocemos.
        return last_trusted
