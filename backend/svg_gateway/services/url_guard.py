"""
Guardia de admision de URLs (prevencion de SSRF).

Este servicio es la PRIMERA linea de defensa del gateway. Antes de que el
servidor haga UNA sola peticion de red hacia la URL que envio el cliente,
verificamos que el destino sea seguro.

Que es SSRF (Server-Side Request Forgery)?
------------------------------------------
Nuestro servicio descarga URLs arbitrarias. Un atacante podria pedirnos:
    /rasterize-svg?url=http://169.254.169.254/latest/meta-data/
y, si no validamos, NUESTRO servidor le haria la peticion al endpoint de
metadata de la nube (credenciales IAM incluidas). Lo mismo con
http://localhost:6379 (nuestro Redis) o http://10.0.0.5/admin (la red
interna). El atacante usa nuestro servidor como "proxy" hacia redes a las
que el no tiene acceso.

Verificaciones, en orden de costo (de mas barato a mas caro):
    1. Esquema: solo "http" o "https" (nada de file://, gopher://, ftp://).
    2. Forma: host presente, sin credenciales embebidas (user:pass@host),
       puerto dentro de la lista blanca.
    3. Resolucion DNS: el host debe resolver a una o mas IPs.
    4. TODAS las IPs resueltas deben ser publicas. Si UNA sola cae en
       loopback, privada (RFC1918 / ULA IPv6), link-local, multicast,
       no especificada, reservada o en un rango prohibido configurado,
       la URL completa se rechaza.

Por que "todas" y no "alguna"?
------------------------------
Un atacante que controla su DNS puede publicar DOS registros A para el
mismo nombre: uno publico y uno privado. Si aceptaramos con que uno sea
publico, la conexion podria terminar en el privado.

Riesgo residual: DNS rebinding
------------------------------
Entre que validamos y que conectamos, el DNS del atacante puede cambiar
la respuesta (TTL de 0 segundos). Por eso el Fetcher vuelve a resolver y
re-verificar justo antes de conectar, y se conecta a la IP verificada
(pinning). Esto reduce la ventana pero NO es una garantia absoluta: es
un riesgo residual documentado, no un problema resuelto.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable
from urllib.parse import urlsplit

from svg_gateway.errors import AdmissionDenied, DenialReason

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}

# NAT64 (RFC 6052): los ultimos 32 bits son una IPv4 embebida.
_NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")

# Firma del resolvedor: (host, puerto) -> lista de IPs en texto.
# Es inyectable para que los tests no dependan del DNS real.
Resolver = Callable[[str, int], Awaitable[list[str]]]


async def system_resolver(host: str, port: int) -> list[str]:
    """
    Resuelve un host usando el resolvedor del sistema operativo.

    loop.getaddrinfo() corre getaddrinfo(3) en un thread del executor, asi
    que NO bloquea el event loop mientras esperamos al DNS.
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    # info[4] es el sockaddr: (ip, port) en IPv4, (ip, port, flow, scope) en IPv6.
    # dict.fromkeys() elimina duplicados conservando el orden.
    return list(dict.fromkeys(info[4][0] for info in infos))


@dataclass(frozen=True)
class AdmissionVerdict:
    """
    Resultado de validar una URL: Allowed(host) o Denied(reason).

    Se produce NUEVO en cada validacion y nunca se guarda entre peticiones
    (el DNS puede cambiar). Dentro de una misma peticion si se reutiliza.

    Atributos:
        allowed (bool): True si la URL puede descargarse.
        host (str): Hostname normalizado (minusculas, sin corchetes IPv6).
        port (int): Puerto destino efectivo (explicito o por esquema).
        addresses (tuple): IPs verificadas, en el orden del resolvedor.
        reason (DenialReason | None): Motivo del rechazo.
        detail (str): Mensaje legible para el cliente.
    """

    allowed: bool
    host: str = ""
    port: int = 0
    addresses: tuple[str, ...] = ()
    reason: DenialReason | None = None
    detail: str = ""

    @classmethod
    def deny(cls, reason: DenialReason, detail: str, host: str = "", port: int = 0):
        return cls(allowed=False, host=host, port=port, reason=reason, detail=detail)

    def raise_if_denied(self) -> "AdmissionVerdict":
        if not self.allowed:
            raise AdmissionDenied(self.detail, self.reason)
        return self


def _embedded_ipv4(ip):
    """Retorna la IPv4 escondida dentro de una IPv6 (mapped, 6to4, NAT64)."""
    if ip.version != 6:
        return None
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    if ip.sixtofour is not None:
        return ip.sixtofour
    if ip in _NAT64_PREFIX:
        return ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
    return None


def is_disallowed_address(ip, deny_networks: Iterable) -> bool:
    """
    Decide si una IP es un destino prohibido.

    Parametros:
        ip: ipaddress.IPv4Address o IPv6Address.
        deny_networks: redes adicionales prohibidas (ip_network).

    Una IPv6 que embebe una IPv4 (ej: ::ffff:127.0.0.1) se evalua TAMBIEN
    por su IPv4: de lo contrario "::ffff:169.254.169.254" pasaria el filtro.
    """
    candidates = [ip]
    embedded = _embedded_ipv4(ip)
    if embedded is not None:
        candidates.append(embedded)

    for candidate in candidates:
        if (
            candidate.is_loopback
            or candidate.is_link_local
            or candidate.is_private
            or candidate.is_multicast
            or candidate.is_unspecified
            or candidate.is_reserved
            or getattr(candidate, "is_site_local", False)
        ):
            return True
        for network in deny_networks:
            if candidate.version == network.version and candidate in network:
                return True
    return False


class UrlAdmissionGuard:
    """
    Valida URLs candidatas y las direcciones a las que resuelven.

    Atributos:
        allowed_ports (frozenset[int]): Puertos destino permitidos.
        deny_networks (tuple): Rangos extra prohibidos (metadata de nubes, etc.).
        resolver (Resolver): Funcion async de resolucion DNS.
    """

    def __init__(
        self,
        allowed_ports: Iterable[int] = (80, 443),
        deny_networks: Iterable[str] = (),
        resolver: Resolver | None = None,
    ):
        self.allowed_ports = frozenset(int(port) for port in allowed_ports)
        # strict=False acepta "10.0.0.1/8" (bits de host encendidos) en vez
        # de fallar al arrancar por un typo del operador.
        self.deny_networks = tuple(
            ipaddress.ip_network(network, strict=False) for network in deny_networks
        )
        self.resolver = resolver or system_resolver

    @classmethod
    def from_settings(cls, settings, resolver: Resolver | None = None) -> "UrlAdmissionGuard":
        return cls(
            allowed_ports=settings.ALLOWED_PORTS,
            deny_networks=settings.DENY_NETWORKS,
            resolver=resolver,
        )

    def inspect_url(self, url: str) -> AdmissionVerdict:
        """
        Verificaciones sin red: esquema, forma, credenciales y puerto.

        Retorna un veredicto "allowed" SIN direcciones todavia; validate()
        completa la resolucion DNS.
        """
        if not url or any(ch.isspace() or ord(ch) < 0x20 for ch in url):
            return AdmissionVerdict.deny(DenialReason.INVALID_URL, "URL is empty or contains whitespace")

        try:
            parts = urlsplit(url)
        except ValueError:
            return AdmissionVerdict.deny(DenialReason.INVALID_URL, "URL could not be parsed")

        # --- Verificacion 1: esquema ---
        if parts.scheme not in ALLOWED_SCHEMES:
            return AdmissionVerdict.deny(
                DenialReason.INVALID_SCHEME,
                f"URL scheme must be http or https, got {parts.scheme or 'none'!r}",
            )

        # --- Verificacion 2: forma ---
        # "@" en el netloc = credenciales embebidas. Tambien es el truco
        # clasico "http://public.com@127.0.0.1/" para confundir parsers.
        if "@" in parts.netloc:
            return AdmissionVerdict.deny(
                DenialReason.EMBEDDED_CREDENTIALS, "URL must not contain embedded credentials"
            )

        host = parts.hostname
        if not host:
            return AdmissionVerdict.deny(DenialReason.INVALID_URL, "URL has no host")

        try:
            # .port lanza ValueError si el puerto no es numerico o > 65535
            port = parts.port or DEFAULT_PORTS[parts.scheme]
        except ValueError:
            return AdmissionVerdict.deny(DenialReason.INVALID_URL, "URL has an invalid port", host)

        if port not in self.allowed_ports:
            return AdmissionVerdict.deny(
                DenialReason.DISALLOWED_PORT, f"Port {port} is not allowed", host, port
            )

        return AdmissionVerdict(allowed=True, host=host, port=port)

    def check_addresses(self, addresses: Iterable[str]) -> str | None:
        """
        Verifica una lista de IPs. Retorna la PRIMERA prohibida, o None.

        El Fetcher llama a este metodo justo antes de conectar, con las IPs
        resueltas en ese momento (mitigacion de DNS rebinding).
        """
        for address in addresses:
            # getaddrinfo puede devolver "fe80::1%eth0": quitamos el scope.
            try:
                ip = ipaddress.ip_address(address.split("%", 1)[0])
            except ValueError:
                return address
            if is_disallowed_address(ip, self.deny_networks):
                return address
        return None

    async def resolve(self, host: str, port: int) -> AdmissionVerdict:
        """
        Resuelve el host y verifica TODAS sus direcciones.

        Usado por validate() y, de nuevo, por el Fetcher al conectar.
        """
        try:
            addresses = await self.resolver(host, port)
        except (OSError, UnicodeError) as e:
            # socket.gaierror es subclase de OSError.
            logger.info("DNS resolution failed for %s: %s", host, e)
            addresses = []

        if not addresses:
            return AdmissionVerdict.deny(
                DenialReason.UNRESOLVABLE_HOST, f"Host {host!r} could not be resolved", host, port
            )

        offending = self.check_addresses(addresses)
        if offending is not None:
            # La IP concreta va al log, NO al cliente: no queremos que el
            # servicio sirva para mapear la red interna.
            logger.warning("Denied %s: resolves to disallowed address %s", host, offending)
            return AdmissionVerdict.deny(
                DenialReason.DISALLOWED_ADDRESS,
                "URL resolves to a disallowed address",
                host,
                port,
            )

        return AdmissionVerdict(allowed=True, host=host, port=port, addresses=tuple(addresses))

    async def validate(self, url: str) -> AdmissionVerdict:
        """
        Valida una URL completa: forma + resolucion + direcciones.

        Retorna:
            AdmissionVerdict: allowed=True con las IPs verificadas, o
            allowed=False con el motivo (reason) y un mensaje (detail).
        """
        verdict = self.inspect_url(url)
        if not verdict.allowed:
            return verdict
        return await self.resolve(verdict.host, verdict.port)
