"""
Tests for MoneyTracker.log.log
(covers the bounded log tank, level handling, the Qt bridge and background cache failures
surfacing in the tank).

Run:
    python -m unittest tests.test_log
"""
import logging

from PySide6.QtCore import QtMsgType

from MoneyTracker.core.cache import PartitionedCacheStore
from MoneyTracker.data import models
from MoneyTracker.log import log
from MoneyTracker.signals import signals
from tests.base import BaseTestCase, NOW, make_record


class LogTestCase(BaseTestCase):
    """Installs a debug-level tank without stdout or Qt handlers."""

    def setUp(self) -> None:
        super().setUp()
        logging.disable(logging.NOTSET)
        log.setup_logging(enable_stream_handler=False, enable_qt_handler=False, log_level=logging.DEBUG)
        self.tank = log.get_tank()

    def tearDown(self) -> None:
        log.setup_logging(enable_stream_handler=False, enable_qt_handler=False)
        super().tearDown()


class SetupTests(LogTestCase):

    def test_only_the_tank_is_installed(self):
        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], log.TankHandler)
        self.assertIs(handlers[0], self.tank)

    def test_chatty_loggers_are_quiet(self):
        for name in log.QUIET_LOGGERS:
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_level_applies_to_handlers(self):
        log.set_logging_level(logging.WARNING)
        self.assertEqual(logging.getLogger().level, logging.WARNING)
        self.assertEqual(self.tank.level, logging.WARNING)

        logging.info('dropped')
        self.assertEqual(self.tank.get_logs(), [])

    def test_invalid_levels(self):
        for level in ('INFO', True, 1234, None):
            with self.subTest(level=level), self.assertRaises(ValueError):
                log.set_logging_level(level)


class TankTests(LogTestCase):

    def test_filter_by_level(self):
        logging.debug('outbox flushed')
        logging.error('cache write failed')
        self.assertEqual(len(self.tank.get_logs()), 2)

        errors = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertIn('cache write failed', errors[0])

        self.tank.clear_logs()
        self.assertEqual(self.tank.get_logs(), [])

    def test_filter_by_logger_name(self):
        logging.getLogger('Qt').warning('from qt')
        logging.getLogger('Qt.child').warning('from child')
        logging.getLogger('Qtx').warning('not qt')
        self.assertEqual(len(self.tank.get_logs(name='Qt')), 2)

    def test_capacity(self):
        tank = log.TankHandler(capacity=3)
        for i in range(5):
            tank.handle(logging.makeLogRecord({'msg': f'm{i}', 'levelno': logging.INFO}))
        self.assertEqual(tank.get_logs(), ['m2', 'm3', 'm4'])

    def test_errors_ask_to_show_logs(self):
        shown = []
        slot = lambda: shown.append(True)
        signals.showLogs.connect(slot)
        self.addCleanup(signals.showLogs.disconnect, slot)

        logging.warning('cache miss')
        self.assertEqual(shown, [])
        logging.error('remote unreachable')
        self.assertEqual(shown, [True])


class QtBridgeTests(LogTestCase):

    def test_messages_are_mapped(self):
        log.qt_message_handler(QtMsgType.QtInfoMsg, None, 'Qt info\n')
        log.qt_message_handler(QtMsgType.QtCriticalMsg, None, 'Qt critical')
        self.assertEqual(self.tank.get_logs(name='Qt')[0].rstrip()[-7:], 'Qt info')
        self.assertEqual(len(self.tank.get_logs(logging.ERROR, name='Qt')), 1)

    def test_fatal_exits(self):
        with self.assertRaises(SystemExit):
            log.qt_message_handler(QtMsgType.QtFatalMsg, None, 'fatal')


class BackgroundFailureTests(LogTestCase):

    async def test_cache_write_failure_is_logged(self):
        family = models.TRANSACTIONS
        cache = PartitionedCacheStore(
            self.storage, family.name, family.partition_key, family.ttl, namespace='user/test', clock=self.clock)
        self.storage.fail_writes = True

        self.assertFalse(await cache.put([make_record('t1', NOW, 5)]))
        errors = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertIn('Failed to write', errors[0])
        self.assertIn('transactions', errors[0])
