"""
Module entrypoint: `python -m battery_logger`

Starts the battery logging service.
"""

from __future__ import annotations


def main() -> None:
    import uvicorn

    from .config import settings

    uvicorn.run("battery_logger.app:app", host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    main()
