"""Run AbuseGuard with ``python -m abuseguard`` or the ``abuseguard`` script."""

import uvicorn

from abuseguard.config import get_settings, validate_settings


def main() -> None:
    settings = get_settings()
    # Fail before uvicorn starts so a bad policy never binds the port
    validate_settings(settings)

    uvicorn.run(
        "abuseguard.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
