"""Logging setup for the sync engine.

Background reconciliation and outbox flushes run in tasks nobody awaits, so their failures
only ever surface here. Every record goes to the root logger, is kept in a bounded in-memory
:class:`TankHandler` and, optionally, printed to stdout. Qt's own messages are routed through
the same handlers.
"""
import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

#: Records kept by the tank before the oldest are dropped
TANK_CAPACITY = 10_000

#: Third-party loggers that are too chatty at the debug level
QUIET_LOGGERS = (
    'googleapiclient.discovery_cache',
    'googleapiclient.discovery',
    'asyncio',
)

LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)


def set_logging_level(level):
    """
    Sets the level of the root logger and of every handler installed on it.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If ``level`` is not a standard logging level.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Converts Qt messages to standard Python logging.
    """
    logger = logging.getLogger('Qt')
    message = message.strip()

    if mode == QtMsgType.QtDebugMsg:
        logger.debug(message)
    elif mode == QtMsgType.QtInfoMsg:
        logger.info(message)
    elif mode == QtMsgType.QtWarningMsg:
        logger.warning(message)
    elif mode == QtMsgType.QtCriticalMsg:
        logger.error(message)
    elif mode == QtMsgType.QtFatalMsg:
        logger.critical(message)
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Configures the root logger and installs the Qt message handler.

    Args:
        enable_stream_handler (bool): Log to stdout as well as to the tank.
        enable_qt_handler (bool): Route Qt messages through Python logging.
        log_level (int): The root logging level.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """
    Returns the TankHandler installed on the root logger.

    Returns:
        TankHandler | None: The handler, or None if logging was not set up.
    """
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted log records in memory.

    Errors emit :attr:`~MoneyTracker.signals.Signals.showLogs` so a client can surface
    failures that happened in the background.

    Attributes:
        tank (collections.deque[tuple[int, str, str]]): Level, logger name and formatted
            message of every kept record, oldest first.
    """

    def __init__(self, capacity=TANK_CAPACITY):
        super().__init__()
        self.tank = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            message = self.format(record)
            self.tank.append((record.levelno, record.name, message))
            if record.levelno >= logging.ERROR:
                signals.showLogs.emit()
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET, name=None):
        """
        Returns the kept messages at or above ``level``.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.
            name (str, optional): Only return records of this logger or its children.

        Returns:
            list[str]: The formatted messages, oldest first.
        """
        return [
            msg for lvl, logger_name, msg in self.tank
            if lvl >= level and (name is None or logger_name == name or logger_name.startswith(f'{name}.'))
        ]

    def clear_logs(self):
        self.tank.clear()
