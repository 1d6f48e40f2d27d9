# app/core/logging.py
import logging
import sys

# 第三方 logger 的默认级别（DEBUG 时 SQL 也打出来）
_QUIET = {
    "uvicorn.access": logging.INFO,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def setup_logging(level: str = "INFO") -> None:
    """
    单一 stdout handler；业务 logger 统一挂在 techora.* 下
    （techora.checkout / techora.capture / techora.inventory / techora.audit ...）。
    """
    lvl = level.upper()
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)

    for name, quiet_level in _QUIET.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if lvl == "DEBUG" else logging.WARNING)
