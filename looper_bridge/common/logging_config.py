from __future__ import annotations

import logging
import sys
import threading
import weakref

from looper_bridge.constants import env_flag

_LEVEL_COLORS = {
    "TRACE": "\033[32m",  # green
    "DEBUG": "\033[36m",  # cyan
    "INFO": "\033[37m",  # light gray
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[41m",  # red background
}
_RESET = "\033[0m"
_DIM = "\033[2m"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Per-datagram logging is skipped entirely unless LOOPER_TRACE is set
TRACE_ENABLED = env_flag("LOOPER_TRACE")


def set_trace_enabled(enabled: bool) -> None:
    global TRACE_ENABLED
    TRACE_ENABLED = enabled


def trace(msg: str, *args) -> None:
    """Log at TRACE on the root logger; a no-op unless tracing is enabled."""
    if TRACE_ENABLED:
        logging.log(TRACE, msg, *args)


class AnsiColorFormatter(logging.Formatter):
    """Formatter that adds ANSI colors and a compact timestamp."""

    def __init__(self, colored: bool = True) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
        )
        self.colored = colored and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.colored:
            return base
        level = record.levelname.upper()
        color = _LEVEL_COLORS.get(level, "")
        ts, _, rest = base.partition(" ")
        if color:
            rest = rest.replace(level, f"{color}{level}{_RESET}", 1)
        return f"{_DIM}{ts}{_RESET} {rest}"


# ---- Dashboard event log sinks ----

_ui_log_targets: set[weakref.ref] = set()
_ui_lock = threading.Lock()


class UiLogHandler(logging.Handler):
    """Mirror log records into every attached NiceGUI ``ui.log`` widget."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S")
        )

    def emit(self, record: logging.LogRecord) -> None:
        if not _ui_log_targets:
            return
        msg = self.format(record)
        with _ui_lock:
            for ref in list(_ui_log_targets):
                widget = ref()
                if widget is None:
                    _ui_log_targets.discard(ref)
                    continue
                try:
                    widget.push(msg)
                except Exception:
                    # widget's client went away
                    _ui_log_targets.discard(ref)


def attach_ui_log(log_widget) -> None:
    try:
        ref = weakref.ref(log_widget)
    except TypeError:
        return
    with _ui_lock:
        _ui_log_targets.add(ref)


def detach_ui_log(log_widget) -> None:
    try:
        ref = weakref.ref(log_widget)
    except TypeError:
        return
    with _ui_lock:
        _ui_log_targets.discard(ref)


def ui_log_target_count() -> int:
    with _ui_lock:
        return len(_ui_log_targets)


def configure_logging(
    level: int = logging.INFO, use_color: bool = True, add_ui_handler: bool = True
) -> logging.Logger:
    """
    Configure the root logger with a colored stderr handler and, optionally, the
    dashboard mirror handler. Safe to call more than once.
    """
    logger = logging.getLogger()
    logger.setLevel(level)
    if level <= TRACE:
        set_trace_enabled(True)

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        console = logging.StreamHandler(stream=sys.stderr)
        console.setLevel(level)
        console.setFormatter(AnsiColorFormatter(colored=use_color))
        logger.addHandler(console)

    if add_ui_handler and not any(isinstance(h, UiLogHandler) for h in logger.handlers):
        logger.addHandler(UiLogHandler(level=max(level, logging.INFO)))

    return logger
