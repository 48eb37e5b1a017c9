"""
Logging Utility for the Topic Chat API

Console logging with:
- Color-coded levels and icons per component
- Optional structured payloads rendered as indented key/value blocks
- Request/response helpers for the HTTP layer
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    SECTION = '\033[94m'    # Bright Blue
    KEY = '\033[93m'        # Bright Yellow
    TIMESTAMP = '\033[90m'  # Dark Gray


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formatter with timestamps, level colors and component icons."""

    LEVEL_ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last dotted part of the logger name
    COMPONENT_ICONS = {
        'main': '🌐',
        'session_engine': '🧭',
        'completion_oracle': '🤖',
        'goal_progress': '📈',
        'turn_log': '📝',
        'transcript_store': '💬',
        'metrics_aggregator': '📊',
        'periodic_runner': '🔄',
        'learn_more': '📋',
        'auth': '🔐',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1]
        icon = self.COMPONENT_ICONS.get(component, self.LEVEL_ICONS.get(record.levelname, '•'))
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, Colors.RESET)
            reset, bold, dim = Colors.RESET, Colors.BOLD, Colors.TIMESTAMP
        else:
            level_color = reset = bold = dim = ''

        formatted = (
            f"{dim}[{timestamp}]{reset} {icon} "
            f"{level_color}{record.levelname:8s}{reset} "
            f"{bold}{record.name}{reset} | {record.getMessage()}"
        )
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def format_data(data: Any, indent: int = 2) -> str:
    """Render nested dicts/lists as an indented block (lists over 5 items are truncated)."""
    pad = ' ' * indent
    if isinstance(data, dict):
        lines = [f"{pad}{key}: {format_data(value, indent + 2).lstrip()}" for key, value in data.items()]
        return "\n".join(lines) if lines else f"{pad}{{}}"
    if isinstance(data, list):
        shown = data[:3] if len(data) > 5 else data
        lines = [f"{pad}- {format_data(item, indent + 2).lstrip()}" for item in shown]
        if len(shown) < len(data):
            lines.append(f"{pad}... ({len(data)} items total)")
        return "\n".join(lines) if lines else f"{pad}[]"
    return f"{pad}{data}"


class StructuredLogger:
    """Logger wrapper that attaches optional structured data to messages."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{format_data(data)}" if data else message

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        """Log a visually separated block, e.g. at startup."""
        separator = "=" * 60
        self.logger.info(self._with_data(f"\n{separator}\n📋 {title.upper()}\n{separator}", data))

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        """Log an error, with the exception's type and traceback when given."""
        if error is not None:
            message = f"{message} Error: {type(error).__name__}: {error}"
        self.logger.error(self._with_data(message, data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))

    def request(self, method: str, path: str, user_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        details = {"user_id": user_id[:20] + "..." if user_id and len(user_id) > 20 else user_id}
        if data:
            details.update(data)
        self.logger.info(self._with_data(f"📥 REQUEST: {method} {path}", details))

    def response(self, status: int, path: str, duration: Optional[float] = None, data: Optional[Dict[str, Any]] = None):
        details: Dict[str, Any] = {"duration_ms": f"{duration * 1000:.2f}" if duration is not None else None}
        if data:
            details.update(data)
        self.logger.info(self._with_data(f"📤 RESPONSE: {status} {path}", details))


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Install the colored console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    for noisy in ('asyncio', 'httpx', 'httpcore', 'urllib3', 'openai'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name))
