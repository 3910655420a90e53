import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger (idempotent). Called once when the app starts."""
    root = logging.getLogger()
    if not any(getattr(h, "_multimodal_rag", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._multimodal_rag = True
        root.addHandler(handler)
    root.setLevel(level.upper())
