import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
HANDLER_NAME = "escrowguard"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("escrowguard")
    root.setLevel(level.upper())
    # uvicorn --reload and the test client both re-enter the lifespan
    if any(h.get_name() == HANDLER_NAME for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
