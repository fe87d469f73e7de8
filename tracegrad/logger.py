# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import logging
import os

PACKAGE_LOGGER = "tracegrad"
LEVEL_VARIABLE = "TRACEGRAD_LOG_LEVEL"

def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Returns a logger under the package logger, configuring the latter on first use.

    The package logger level comes from the TRACEGRAD_LOG_LEVEL environment
    variable and defaults to WARNING.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter('[%(asctime)s][%(levelname)s][%(name)s] %(message)s')
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    level_name = os.getenv(LEVEL_VARIABLE, "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if not isinstance(level, int):
        level = logging.WARNING
    package_logger.setLevel(level)
    return logging.getLogger(name)
