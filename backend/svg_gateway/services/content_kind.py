"""
Clasificacion del contenido descargado: es SVG o no?

Funcion pura: bytes + Content-Type declarado -> ContentKind. No toca la
red, asi que se puede testear sin servidor.

Por que no confiamos solo en el Content-Type del servidor origen?
-----------------------------------------------------------------
Porque el servidor puede enviarlo como quiera. Muchos servidores sirven
SVG como "text/plain" o "application/octet-stream", y un atacante puede
servir HTML con "Content-Type: image/svg+xml". Por eso usamos
python-magic, que lee los primeros bytes (magic bytes) para determinar el
tipo real, y el header solo sirve como pista.

Reglas, en orden:
    1. libmagic dice un tipo binario (image/png, PDF...)  -> NOT_SVG
    2. libmagic dice image/svg+xml o un tipo texto/XML, y
       el elemento raiz del documento es <svg>            -> SVG
       (el prolog se busca en los primeros 4 KB, o en todo
       el documento si el header declara image/svg+xml)
    3. Cualquier otra cosa                                -> NOT_SVG

Exigimos la raiz <svg> incluso cuando libmagic dice "image/svg+xml":
libmagic tambien etiqueta asi un XHTML que tenga un <svg> embebido
cerca del principio.
"""

import re
from enum import Enum

# python-magic: deteccion de tipos MIME con libmagic (la misma libreria
# que usa el comando `file` de Linux).
import magic

SVG_MIME = "image/svg+xml"

# Cuantos bytes mirar para sniffing. libmagic busca "<svg" en los
# primeros 4 KB; usamos lo mismo para el marcador.
SNIFF_BYTES = 4096

# Tipos "textuales" de libmagic en los que un SVG puede esconderse:
# text/plain, text/xml, application/xml, text/html (un SVG sin
# declaracion XML a veces sale como HTML).
_TEXTUAL_MIME = re.compile(r"^(text/[\w.+-]+|application/([\w.+-]+\+)?xml)$")

# El PRIMER elemento del documento debe ser <svg>. Antes solo puede haber
# BOM, espacios, la declaracion XML, comentarios, instrucciones de
# procesamiento y un DOCTYPE (con o sin subset interno "[...]").
# Asi una pagina HTML que tiene un <svg> embebido NO cuenta como SVG.
# Cada grupo termina en su propio cierre ("?>", "-->", ">") y no puede
# saltarlo: el prolog se recorre en tiempo lineal.
_SVG_ROOT = re.compile(
    rb"^(?:\xef\xbb\xbf)?\s*"
    rb"(?:<\?(?:[^?]|\?(?!>))*\?>\s*|<!--(?:[^-]|-(?!->))*-->\s*|<!DOCTYPE[^\[>]*(?:\[[^\]]*\][^>]*)?>\s*)*"
    rb"<(?:[\w.-]+:)?svg[\s>/]",
    re.IGNORECASE | re.DOTALL,
)


class ContentKind(str, Enum):
    SVG = "svg"
    NOT_SVG = "not_svg"


def _declared_mime(declared_content_type: str | None) -> str:
    # "image/svg+xml; charset=utf-8" -> "image/svg+xml"
    if not declared_content_type:
        return ""
    return declared_content_type.split(";", 1)[0].strip().lower()


def classify_content(data: bytes, declared_content_type: str | None = None) -> ContentKind:
    """
    Clasifica bytes descargados como SVG o NOT_SVG.

    Parametros:
        data (bytes): Cuerpo completo de la respuesta.
        declared_content_type (str | None): Header Content-Type del origen.

    Retorna:
        ContentKind.SVG o ContentKind.NOT_SVG.

    Ejemplos:
        >>> classify_content(b'<svg xmlns="http://www.w3.org/2000/svg"/>')
        ContentKind.SVG
        >>> classify_content(b"\\x89PNG\\r\\n\\x1a\\n...", "image/svg+xml")
        ContentKind.NOT_SVG
    """
    if not data or not data.strip():
        return ContentKind.NOT_SVG

    head = data[:SNIFF_BYTES]
    sniffed = magic.from_buffer(head, mime=True) or ""

    # --- Regla 1: binario conocido ---
    # Algunas versiones viejas de libmagic reportan "image/svg".
    if not sniffed.startswith("image/svg") and not _TEXTUAL_MIME.match(sniffed):
        return ContentKind.NOT_SVG

    # --- Regla 2: elemento raiz <svg> ---
    # Si el origen declara image/svg+xml, toleramos un prolog largo
    # (comentarios de licencia, DOCTYPE con entidades).
    window = data if _declared_mime(declared_content_type) == SVG_MIME else head
    if _SVG_ROOT.match(window):
        return ContentKind.SVG

    return ContentKind.NOT_SVG
