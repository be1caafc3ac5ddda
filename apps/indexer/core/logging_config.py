"""
Configuración de structlog para los procesos del indexador (scheduler y CLI).
Los módulos solo hacen `structlog.get_logger(__name__)`; aquí se decide el formato.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """
    - json=True: una línea JSON por evento (producción)
    - json=False: renderer de consola con colores (desarrollo)
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Librerías que usan logging estándar (apscheduler, sqlalchemy, httpx)
    logging.basicConfig(level=log_level, stream=sys.stdout, format="%(levelname)s %(name)s: %(message)s")
