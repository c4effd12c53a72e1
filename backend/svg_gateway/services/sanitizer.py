"""
Sanitizacion de SVGs antes de rasterizarlos.

Un SVG no es "solo una imagen": es XML, y puede traer <script>, handlers
de eventos (onload, onclick), <foreignObject> con HTML adentro, entidades
XML que leen archivos locales (XXE) o referencias a recursos externos
(<image href="http://10.0.0.5/...">) que harian que el RASTERIZADOR haga
peticiones de red a nuestras espaldas, saltandose el guardia SSRF.

Estrategia: lista blanca (whitelist)
------------------------------------
En vez de buscar lo peligroso (lista negra, siempre incompleta),
conservamos SOLO los elementos y atributos que sabemos inofensivos. Todo
lo demas se elimina en silencio.

Pasos:
    1. Parseo con defusedxml: rechaza bombas de entidades y XXE.
    2. Parseo con lxml sin resolver entidades ni acceder a la red, quitando
       comentarios e instrucciones de procesamiento.
    3. La raiz DEBE ser <svg>. Un XHTML o un RSS no se rasteriza.
    4. Recorrido recursivo: elementos fuera de la whitelist se eliminan
       (con todo su subarbol), atributos fuera de la whitelist o con
       valores peligrosos tambien.
    5. Referencias: href solo puede apuntar dentro del documento ("#id")
       o a una imagen embebida (data:image/png, jpeg, gif, webp). url()
       en atributos y estilos solo puede ser local ("url(#grad)").

Las fallas de parseo se reportan como SanitizationRejected. Es una
funcion sincrona y CPU-bound: el pipeline la ejecuta en un thread.
"""

import re
from xml.etree.ElementTree import ParseError

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET
from lxml import etree

from svg_gateway.errors import SanitizationRejected

# Elementos que NO ejecutan codigo ni cargan recursos externos.
# Excluidos a proposito: script, style, foreignObject, feImage, iframe,
# a (links), animate* (pueden reescribir href en tiempo de ejecucion).
ALLOWED_ELEMENTS = frozenset(
    name.lower()
    for name in (
        "svg", "g", "defs", "symbol", "use", "title", "desc", "metadata", "switch",
        "circle", "ellipse", "line", "path", "polygon", "polyline", "rect",
        "text", "tspan", "textPath",
        "image", "clipPath", "mask", "pattern", "marker",
        "linearGradient", "radialGradient", "stop",
        "filter", "feBlend", "feColorMatrix", "feComponentTransfer", "feComposite",
        "feConvolveMatrix", "feDiffuseLighting", "feDisplacementMap", "feDistantLight",
        "feDropShadow", "feFlood", "feFuncA", "feFuncB", "feFuncG", "feFuncR",
        "feGaussianBlur", "feMerge", "feMergeNode", "feMorphology", "feOffset",
        "fePointLight", "feSpecularLighting", "feSpotLight", "feTile", "feTurbulence",
    )
)

# Atributos de presentacion y geometria. Los handlers on* nunca estan.
ALLOWED_ATTRIBUTES = frozenset(
    name.lower()
    for name in (
        "id", "class", "style", "lang", "space", "version", "baseProfile",
        # Presentacion
        "fill", "fill-opacity", "fill-rule", "stroke", "stroke-width", "stroke-linecap",
        "stroke-linejoin", "stroke-dasharray", "stroke-dashoffset", "stroke-miterlimit",
        "stroke-opacity", "opacity", "color", "display", "visibility", "overflow",
        "clip", "clip-path", "clip-rule", "mask", "filter", "flood-color",
        "flood-opacity", "lighting-color", "stop-color", "stop-opacity",
        "color-interpolation-filters", "shape-rendering", "vector-effect",
        "font-family", "font-size", "font-style", "font-weight", "font-variant",
        "text-anchor", "text-decoration", "dominant-baseline", "alignment-baseline",
        "baseline-shift", "letter-spacing", "word-spacing", "writing-mode",
        "marker-start", "marker-mid", "marker-end",
        # Geometria
        "x", "y", "x1", "y1", "x2", "y2", "cx", "cy", "r", "rx", "ry", "fx", "fy",
        "width", "height", "d", "points", "pathLength", "viewBox",
        "preserveAspectRatio", "transform", "dx", "dy", "rotate", "textLength",
        "lengthAdjust", "startOffset",
        # Referencias (el valor se revisa aparte)
        "href", "gradientUnits", "gradientTransform", "spreadMethod", "offset",
        "patternUnits", "patternContentUnits", "patternTransform", "markerUnits",
        "markerWidth", "markerHeight", "refX", "refY", "orient", "maskUnits",
        "maskContentUnits", "clipPathUnits", "filterUnits", "primitiveUnits",
        # Filtros
        "in", "in2", "result", "mode", "operator", "k1", "k2", "k3", "k4",
        "stdDeviation", "specularExponent", "specularConstant", "surfaceScale",
        "diffuseConstant", "azimuth", "elevation", "kernelMatrix", "order",
        "type", "values", "tableValues", "slope", "intercept", "amplitude",
        "exponent", "scale", "xChannelSelector", "yChannelSelector", "radius",
        "baseFrequency", "numOctaves", "seed", "stitchTiles",
        "limitingConeAngle", "pointsAtX", "pointsAtY", "pointsAtZ", "z",
    )
)

# href permitido: ancla local o imagen raster embebida.
_SAFE_HREF = re.compile(r"^\s*(#|data:image/(png|jpe?g|gif|webp)[;,])", re.IGNORECASE)

# Elementos que sin href no dibujan nada. Si su href se descarto, se
# eliminan enteros para que el rasterizador no intente resolver "".
_NEEDS_HREF = frozenset(("use", "image"))

# Cualquier url(...) en un valor; el destino queda en el grupo 1.
_URL_REFERENCE = re.compile(r"url\(\s*['\"]?([^)'\"]*)['\"]?\s*\)", re.IGNORECASE)

_DANGEROUS_VALUE = re.compile(
    r"javascript:|vbscript:|data:text/html|expression\s*\(|@import|-moz-binding|behavior\s*:",
    re.IGNORECASE,
)


def _local_name(tag) -> str:
    return etree.QName(tag).localname


def _only_local_urls(value: str) -> bool:
    return all(target.strip().startswith("#") for target in _URL_REFERENCE.findall(value))


def _clean_style(style: str) -> str:
    """Quita las declaraciones que usan url() externos o valores peligrosos."""
    kept = []
    for declaration in style.split(";"):
        if not declaration.strip():
            continue
        if _DANGEROUS_VALUE.search(declaration) or not _only_local_urls(declaration):
            continue
        kept.append(declaration.strip())
    return "; ".join(kept)


def _remove_keeping_tail(parent, child) -> None:
    """
    Elimina `child` sin perder su "tail" (el texto que le sigue).

    Dentro de <text> ese texto SI se dibuja: en
    <text>Hola <a>x</a> mundo</text>, " mundo" es el tail de <a>.
    """
    if child.tail:
        previous = child.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + child.tail
        else:
            parent.text = (parent.text or "") + child.tail
    parent.remove(child)


class SvgSanitizer:
    """
    Sanitizador por whitelist (defusedxml + lxml).

    Atributos:
        max_input_bytes (int): Tamano maximo del SVG a sanitizar.
        max_output_bytes (int): Tamano maximo del SVG ya limpio.
    """

    def __init__(self, max_input_bytes: int = 1024 * 1024, max_output_bytes: int = 2 * 1024 * 1024):
        self.max_input_bytes = max_input_bytes
        self.max_output_bytes = max_output_bytes

    @classmethod
    def from_settings(cls, settings) -> "SvgSanitizer":
        return cls(
            max_input_bytes=settings.MAX_SVG_BYTES,
            max_output_bytes=settings.MAX_SANITIZED_BYTES,
        )

    def sanitize(self, data: bytes) -> bytes:
        """
        Retorna el SVG limpio, serializado como UTF-8 con declaracion XML.

        Raises:
            SanitizationRejected: XML invalido o peligroso, raiz que no es
                <svg>, o documento fuera de los limites de tamano.
        """
        if len(data) > self.max_input_bytes:
            raise SanitizationRejected(f"SVG exceeds {self.max_input_bytes} bytes")

        # --- Paso 1: defusedxml detecta XXE y bombas de entidades ---
        try:
            DefusedET.fromstring(data)
        except (DefusedXmlException, ParseError) as e:
            raise SanitizationRejected(f"Malformed or dangerous XML: {e}") from e

        # --- Paso 2: lxml para manipular el arbol ---
        parser = etree.XMLParser(
            remove_comments=True,
            remove_pis=True,
            strip_cdata=True,
            resolve_entities=False,
            no_network=True,
            load_dtd=False,
        )
        try:
            root = etree.fromstring(data, parser)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise SanitizationRejected(f"Failed to parse SVG: {e}") from e

        # --- Paso 3: la raiz debe ser <svg> ---
        if _local_name(root.tag) != "svg":
            raise SanitizationRejected(f"Root element is <{_local_name(root.tag)}>, not <svg>")

        # --- Pasos 4 y 5: whitelist recursiva ---
        self._clean_element(root)

        cleaned = etree.tostring(root, encoding="utf-8", xml_declaration=True)
        if len(cleaned) > self.max_output_bytes:
            raise SanitizationRejected(f"Sanitized SVG exceeds {self.max_output_bytes} bytes")
        return cleaned

    def _clean_element(self, element) -> bool:
        """Limpia `element` in-place. Retorna False si hay que eliminarlo."""
        # Entidades sin resolver y similares no tienen tag de texto.
        if not isinstance(element.tag, str):
            return False
        if _local_name(element.tag).lower() not in ALLOWED_ELEMENTS:
            return False

        for name, value in list(element.attrib.items()):
            if not self._keep_attribute(_local_name(name), value):
                del element.attrib[name]

        local = _local_name(element.tag).lower()
        if local in _NEEDS_HREF and not any(_local_name(name) == "href" for name in element.attrib):
            return False

        if "style" in element.attrib:
            style = _clean_style(element.attrib["style"])
            if style:
                element.attrib["style"] = style
            else:
                del element.attrib["style"]

        for child in list(element):
            if not self._clean_element(child):
                _remove_keeping_tail(element, child)
        return True

    @staticmethod
    def _keep_attribute(name: str, value: str) -> bool:
        lowered = name.lower()
        if lowered.startswith("on") or lowered not in ALLOWED_ATTRIBUTES:
            return False
        if lowered == "href":
            return bool(_SAFE_HREF.match(value))
        if lowered == "style":
            return True
        if _DANGEROUS_VALUE.search(value):
            return False
        return _only_local_urls(value)
