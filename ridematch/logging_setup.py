import logging
from pathlib import Path


def configure_logging(log_file: str | None = None, level: int = logging.DEBUG):
    """Send application logs to a file.

    Defaults to `ridematch/logs/ridematch.log`; a relative `log_file` is placed in
    the same directory. Calling it again once logging is configured is a no-op.
    """
    logs_dir = Path(__file__).resolve().parent / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = Path(log_file) if log_file else Path("ridematch.log")
    if not log_file.is_absolute():
        log_file = logs_dir / log_file

    logging.basicConfig(
        filename=str(log_file),
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # third-party clients are chatty at DEBUG
    for name in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(name).setLevel(max(level, logging.INFO))
