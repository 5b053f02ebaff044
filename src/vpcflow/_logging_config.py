# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Default logging setup for scripts and notebooks driving the engine."""
import logging
import logging.handlers
import os
import sys
from pathlib import Path

LOG_DATE_FORMAT = "%m/%d/%Y %I:%M:%S %p"
LOG_FORMAT = "%(levelname)s | %(asctime)-15s | %(message)s"
CORE_LOG_FILE = "vpcflow_core.log"
CORE_LOG_MAX_BYTES = 5000000
CORE_LOG_BACKUP_COUNT = 5
# set on CI / build hosts to keep console output quiet
DISABLE_CONSOLE_LOGGING_ENV = "VPCFLOW_DISABLE_CONSOLE_LOGGING"


def init_basic_logging(log_dir=None, enable_console_logging=True, root_level=logging.INFO):
    """Attach a console handler (stdout) and, if `log_dir` is given, a rotating DEBUG file handler to the root logger.

    Engine progress (plans, waves, retries, provider calls) is logged under the 'vpcflow' logger hierarchy.
    """
    logger = logging.getLogger()
    logger.setLevel(root_level)

    if enable_console_logging and not os.environ.get(DISABLE_CONSOLE_LOGGING_ENV):
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(root_level)
        console.setFormatter(logging.Formatter("%(asctime)s - %(name)-13s: %(levelname)-8s %(message)s"))
        logger.addHandler(console)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        rotating_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path / CORE_LOG_FILE), maxBytes=CORE_LOG_MAX_BYTES, backupCount=CORE_LOG_BACKUP_COUNT
        )
        rotating_handler.setLevel(logging.DEBUG)
        rotating_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(rotating_handler)

    # no-op if handlers are attached already
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=root_level)

    return logger
