import logging

from colorlog import ColoredFormatter

TRACE_LEVEL = 15  # ... info - trace - debug
logging.addLevelName(TRACE_LEVEL, "TRACE")


def trace(log: logging.Logger, msg, *args, **kwargs):
    """Emit ``msg`` at TRACE level on any stdlib logger."""
    if log.isEnabledFor(TRACE_LEVEL):
        kwargs.setdefault("stacklevel", 2)
        log.log(TRACE_LEVEL, msg, *args, **kwargs)


def make_formatter() -> ColoredFormatter:
    return ColoredFormatter(
        "%(log_color)s[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s",
        datefmt="%d/%m/%y %H:%M:%S",
        log_colors={
            "TRACE": "white",
            "DEBUG": "blue",
            "INFO": "white",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        },
    )


def configure_logging(level=logging.INFO) -> logging.Logger:
    """Attach a single colour handler to the ``mediavault`` logger tree."""
    root = logging.getLogger("mediavault")
    root.setLevel(level)
    if not any(getattr(h, "_mediavault", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(make_formatter())
        handler._mediavault = True
        root.addHandler(handler)
    return root
