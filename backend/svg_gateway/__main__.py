"""
Permite arrancar el servicio con:

    python -m svg_gateway

Equivale a `uvicorn svg_gateway.main:app --host 0.0.0.0 --port $PORT`.
"""

import uvicorn

from svg_gateway.config import settings


def main():
    uvicorn.run(
        "svg_gateway.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
