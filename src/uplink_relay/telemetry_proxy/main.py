"""Command-line entrypoint for running the telemetry proxy."""

from __future__ import annotations

import uvicorn

from ..common.observability import configure_logging
from ..common.settings import TelemetryProxySettings
from .app import SERVICE_NAME, create_app


def main() -> None:
    settings = TelemetryProxySettings()
    configure_logging(SERVICE_NAME, settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
