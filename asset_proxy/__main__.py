from __future__ import annotations

import uvicorn

from .settings import load_settings_from_env


def main() -> None:
    """Serve the asset proxy with uvicorn using the environment settings."""
    settings = load_settings_from_env()
    options = {}
    if settings.tls_enabled:
        options["ssl_certfile"] = settings.tls_cert_file
        options["ssl_keyfile"] = settings.tls_key_file
    uvicorn.run(
        "asset_proxy.app:app",
        host="0.0.0.0",  # noqa: S104
        port=settings.server_port,
        log_level=settings.python_log_level.lower(),
        timeout_keep_alive=int(settings.idle_timeout),
        timeout_graceful_shutdown=int(settings.shutdown_timeout),
        **options,
    )


if __name__ == "__main__":
    main()
