#!/usr/bin/env python3
"""Run the browser bridge relay server"""
import uvicorn

from bridge.core.config import settings


def main() -> None:
    uvicorn.run(
        "bridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
