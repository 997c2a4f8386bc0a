"""Command-line entrypoint for running the symbol proxy under uvicorn."""

from __future__ import annotations

import uvicorn
from pydantic import ValidationError

from ..common.settings import SymbolProxySettings
from .app import create_app


def main() -> None:
    try:
        settings = SymbolProxySettings()
    except ValidationError as exc:
        raise SystemExit(f"Invalid symserver configuration:\n{exc}") from exc

    uvicorn.run(
        create_app(settings),
        host=settings.bind_address,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
