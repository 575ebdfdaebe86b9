from __future__ import annotations

import logging
import unittest

from swipeq.observability import logging as swipeq_logging
from swipeq.observability.logging import PACKAGE_LOGGER, configure_logging, get_logger


class LoggingSetupTests(unittest.TestCase):
    def setUp(self):
        self.package_logger = logging.getLogger(PACKAGE_LOGGER)
        self.original_level = self.package_logger.level

    def tearDown(self):
        self.package_logger.setLevel(self.original_level)

    def test_module_loggers_inherit_package_level(self):
        configure_logging("DEBUG")
        logger = get_logger("swipeq.queue.manager")

        self.assertEqual(logger.level, logging.NOTSET)
        self.assertEqual(logger.getEffectiveLevel(), logging.DEBUG)

    def test_handler_attached_once(self):
        configure_logging("INFO")
        configure_logging("WARNING")

        handlers = [h for h in self.package_logger.handlers if h is swipeq_logging._handler]
        self.assertEqual(len(handlers), 1)
        self.assertEqual(self.package_logger.level, logging.WARNING)

    def test_unknown_level_falls_back_to_info(self):
        configure_logging("chatty")
        self.assertEqual(self.package_logger.level, logging.INFO)

    def test_root_logger_untouched(self):
        root_handlers = list(logging.getLogger().handlers)
        configure_logging("ERROR")
        self.assertEqual(logging.getLogger().handlers, root_handlers)


if __name__ == "__main__":
    unittest.main()
