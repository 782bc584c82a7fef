import logging
import logging.config

"""
Logging setup for pgharness.

Every module gets its logger through getLogger() so that all of them
hang off the "pgharness" logger, which configure_logging() wires to a
rich console handler. Test runs leave configuration to pytest.
"""

ROOT_LOGGER = "pgharness"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "rich": {
            "class": "rich.logging.RichHandler",
            "show_path": False,
            "rich_tracebacks": True,
            "markup": False,
        },
    },
    "loggers": {
        ROOT_LOGGER: {"level": "INFO", "handlers": ["rich"], "propagate": False},
    },
}


def getLogger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Logger below the pgharness root, e.g. getLogger("containers")."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def configure_logging(verbose: bool = False) -> None:
    """Install the rich handler. Transient poll failures show up with verbose."""
    config = {
        **LOGGING,
        "loggers": {
            ROOT_LOGGER: {
                **LOGGING["loggers"][ROOT_LOGGER],
                "level": "DEBUG" if verbose else "INFO",
            },
        },
    }
    logging.config.dictConfig(config)
