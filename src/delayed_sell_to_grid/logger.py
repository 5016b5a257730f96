import logging


def setup_logger(debug_level: str = "INFO") -> None:
    log_level = getattr(logging, debug_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if not root_logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("pymodbus").setLevel(logging.WARNING)
    logging.getLogger("aioesphomeapi.connection").setLevel(logging.WARNING)

    logging.info("Logger configured with level %s", debug_level.upper())
