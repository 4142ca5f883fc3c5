import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


class Colors:
    """ANSI color codes for console output"""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    BRIGHT_BLACK = '\033[90m'
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_CYAN = '\033[96m'
    WHITE = '\033[37m'


# SUCCESS is reported as INFO to the stdlib logging tree
_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.SUCCESS: logging.INFO,
}


class MandiLogger:
    """
    Domain logger for the messaging service.

    Formats lines as `[time] [DOMAIN/CONTEXT] [LEVEL] message | key=value`
    and hands them to the `kisanmandi.<domain>` stdlib logger, so handlers,
    levels and pytest's caplog all apply.
    """

    def __init__(self, service_name: str = "MANDI", enable_colors: bool = True):
        self.service_name = service_name.upper()
        self.enable_colors = enable_colors
        self._logger = logging.getLogger(f"kisanmandi.{service_name.lower()}")

        self.level_colors = {
            LogLevel.DEBUG: Colors.BRIGHT_CYAN,
            LogLevel.INFO: Colors.BRIGHT_BLUE,
            LogLevel.WARNING: Colors.BRIGHT_YELLOW,
            LogLevel.ERROR: Colors.BRIGHT_RED,
            LogLevel.SUCCESS: Colors.BRIGHT_GREEN,
        }

    def _get_timestamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S.%f")[:-3]

    def _colorize(self, text: str, color: str) -> str:
        """Apply color to text if colors are enabled"""
        if not self.enable_colors:
            return text
        return f"{color}{text}{Colors.RESET}"

    def _format_extras(self, extras: Dict[str, Any]) -> str:
        parts = []
        for key, value in extras.items():
            if isinstance(value, (dict, list)):
                value_str = json.dumps(value, default=str, separators=(',', ':'))
                if len(value_str) > 100:
                    value_str = value_str[:100] + "..."
            else:
                value_str = str(value)
            parts.append(f"{key}={value_str}")
        return ", ".join(parts)

    def format_message(self, level: LogLevel, message: str, context: Optional[str] = None, **kwargs) -> str:
        """Format the log message with consistent structure"""
        service_context = self.service_name
        if context:
            service_context += f"/{context.upper()}"

        timestamp_text = self._colorize(f"[{self._get_timestamp()}]", Colors.DIM)
        service_text = self._colorize(f"[{service_context}]", Colors.BRIGHT_BLACK)
        level_text = self._colorize(f"[{level.value}]", self.level_colors.get(level, Colors.WHITE) + Colors.BOLD)

        formatted = f"{timestamp_text} {service_text} {level_text} {message}"
        if kwargs:
            formatted += self._colorize(f" | {self._format_extras(kwargs)}", Colors.DIM)
        return formatted

    def _log(self, level: LogLevel, message: str, context: Optional[str] = None, **kwargs):
        stdlib_level = _STDLIB_LEVELS[level]
        if not self._logger.isEnabledFor(stdlib_level):
            return
        self._logger.log(stdlib_level, self.format_message(level, message, context, **kwargs))

    def debug(self, message: str, context: Optional[str] = None, **kwargs):
        self._log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[str] = None, **kwargs):
        self._log(LogLevel.INFO, message, context, **kwargs)

    def warning(self, message: str, context: Optional[str] = None, **kwargs):
        self._log(LogLevel.WARNING, message, context, **kwargs)

    def error(self, message: str, context: Optional[str] = None, **kwargs):
        self._log(LogLevel.ERROR, message, context, **kwargs)

    def success(self, message: str, context: Optional[str] = None, **kwargs):
        self._log(LogLevel.SUCCESS, message, context, **kwargs)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_kisanmandi", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._kisanmandi = True
        root.addHandler(handler)
    root.setLevel(level.upper())


# Global logger instances for different domains
chat_logger = MandiLogger("CHAT")
offer_logger = MandiLogger("OFFER")
presence_logger = MandiLogger("PRESENCE")
db_logger = MandiLogger("DATABASE")
api_logger = MandiLogger("API")
