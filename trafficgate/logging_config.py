"""
Logging Configuration - loguru sinks for the gate.

Text output for development, one JSON object per line for production.
Decision fields bound with logger.bind() (stage, decision, score, signal,
ip) are lifted to the top level of each JSON line so log pipelines can
filter on them directly.
"""
import json
import logging
import sys
from typing import Iterable, Optional

from loguru import logger

GATE_FIELDS = ("stage", "decision", "score", "signal", "method", "path", "ip")

TEXT_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} - {message} | {extra}"

STDLIB_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


def json_serializer(record: dict) -> str:
    """One log record as a JSON line"""
    extra = {k: v for k, v in record["extra"].items() if k != "_json"}
    line = {
        "ts": record["time"].isoformat(timespec="milliseconds"),
        "level": record["level"].name,
        "logger": record["name"],
        "msg": record["message"],
    }
    for key in GATE_FIELDS:
        if key in extra:
            line[key] = extra.pop(key)
    if extra:
        line["extra"] = extra

    exc = record["exception"]
    if exc:
        line["error"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value) if exc.value else None,
        }
    return json.dumps(line, ensure_ascii=False, default=str)


def json_sink(message):
    print(json_serializer(message.record), file=sys.stderr)


def _json_file_format(record: dict) -> str:
    # loguru formats the returned template, so the JSON goes through extra
    record["extra"]["_json"] = json_serializer(record)
    return "{extra[_json]}\n"


class InterceptHandler(logging.Handler):
    """Forwards stdlib logging (uvicorn, fastapi) into loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def intercept_stdlib_logging(names: Iterable[str] = STDLIB_LOGGERS) -> None:
    for name in names:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Replace loguru's default sink.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines instead of colored text
        log_file: Also write to this file, rotated at 10 MB
    """
    logger.remove()

    if json_format:
        logger.add(json_sink, level=level, format="{message}", colorize=False)
    else:
        logger.add(sys.stderr, level=level, format=TEXT_FORMAT, colorize=True)

    if log_file:
        logger.add(
            log_file,
            level=level,
            format=_json_file_format if json_format else FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
        )


def log_request(path: str, method: str = "GET", **kwargs):
    logger.bind(method=method, path=path, **kwargs).debug(f"Request: {method} {path}")


def log_decision(stage: str, decision: str, score: int, **kwargs):
    """Quick or final decision for one visitor"""
    logger.bind(stage=stage, decision=decision, score=score, **kwargs).info(
        f"Decision [{stage}]: {decision} (score={score})"
    )


def log_signal_error(signal: str, error: str, **kwargs):
    """Analyzer failure that was downgraded to an absent signal"""
    logger.bind(signal=signal, error=error, **kwargs).warning(f"Signal {signal} unavailable: {error}")
