"""Logging setup for personamem.

Every module logs through ``structlog.get_logger("personamem.<subsystem>")``.
The stdlib loggers underneath are arranged so that one event lands in
three places: the console, the combined ``personamem.log`` and the file
of its own subsystem::

    root                       console
      personamem               logs/personamem.log
        personamem.memory      logs/memory.log
        personamem.conversation, .llm, .maintenance, .storage  (likewise)

Conversation text reaches the logs through errors and previews, so a
processor scrubs API keys, bearer tokens and e-mail local parts before
anything is rendered.
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

SUBSYSTEMS = ("memory", "conversation", "llm", "maintenance", "storage")
LOGGER_PREFIX = "personamem"

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_REDACTED = "***REDACTED***"
_KEY_PATTERNS = (
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
)
_EMAIL_PATTERN = re.compile(
    r"([a-zA-Z0-9._%+-])[a-zA-Z0-9._%+-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"
)


def _scrub(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    for pattern in _KEY_PATTERNS:
        value = pattern.sub(_REDACTED, value)
    return _EMAIL_PATTERN.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", value)


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor redacting keys, tokens and e-mail addresses.

    Strings are scrubbed at the top level and one level down inside
    lists, tuples and dicts.
    """
    for key, value in event_dict.items():
        if isinstance(value, (list, tuple)):
            event_dict[key] = type(value)(_scrub(v) for v in value)
        elif isinstance(value, dict):
            event_dict[key] = {k: _scrub(v) for k, v in value.items()}
        else:
            event_dict[key] = _scrub(value)
    return event_dict


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def _reset(name: str, level: int) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(level)
    log.handlers.clear()
    log.propagate = True
    return log


def _attach_file(
    log: logging.Logger,
    path: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> None:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    log.addHandler(handler)


def setup_logging(config=None) -> None:
    """Install the handler tree and configure structlog.

    Called twice by ``main``: once with no config so that startup errors
    are visible, then again with the loaded Config. Only the second call
    lets structlog cache bound loggers.

    Args:
        config: Config providing ``log_dir``, ``logging_level``,
            ``logging_subsystem_levels``, ``logging_max_file_size_mb`` and
            ``logging_backup_count``; None for defaults.
    """
    if config is None:
        log_dir = Path(__file__).parent.parent / "logs"
        level = logging.INFO
        subsystem_levels: Dict[str, str] = {}
        max_bytes, backup_count = DEFAULT_MAX_BYTES, DEFAULT_BACKUP_COUNT
    else:
        log_dir = config.log_dir
        level = _level(config.logging_level, logging.INFO)
        subsystem_levels = config.logging_subsystem_levels
        max_bytes = config.logging_max_file_size_mb * 1024 * 1024
        backup_count = config.logging_backup_count

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        print(f"WARNING: log directory {log_dir} unusable ({exc}); logging to console only",
              file=sys.stderr)
        write_files = False

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    combined = _reset(LOGGER_PREFIX, logging.DEBUG)
    if write_files:
        _attach_file(combined, log_dir / "personamem.log", level, file_formatter,
                     max_bytes, backup_count)

    for subsystem in SUBSYSTEMS:
        sub_level = _level(subsystem_levels.get(subsystem), level)
        sub_logger = _reset(f"{LOGGER_PREFIX}.{subsystem}", sub_level)
        if write_files:
            _attach_file(sub_logger, log_dir / f"{subsystem}.log", sub_level, file_formatter,
                         max_bytes, backup_count)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
