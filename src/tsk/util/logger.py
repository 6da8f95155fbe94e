import logging
from logging.handlers import TimedRotatingFileHandler

from tsk.util.dirs import ensure_dirs, get_home, load_env

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_mode(*, is_debug: bool) -> None:
    if is_debug:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)


def setup_logger(
    name: str,
    *,
    is_stream: bool = False,
    is_file: bool = True,
) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        # 同じ名前で何度呼ばれてもハンドラは一度だけ
        return logger
    logger.setLevel(logging.DEBUG)

    if is_file and load_env().get("LOG_FILE", "1") == "0":
        is_file = False

    if is_stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(logging.WARNING)
        stream_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(stream_handler)

    if is_file:
        home = get_home()
        ensure_dirs(home)
        time_rotate_file_handler = TimedRotatingFileHandler(
            (home / f"{name.lower()}.log").as_posix(),
            when="MIDNIGHT",
            interval=1,
            backupCount=7,
            encoding="utf-8",
            delay=True,
        )
        time_rotate_file_handler.setLevel(logging.DEBUG)
        time_rotate_file_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(time_rotate_file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger
