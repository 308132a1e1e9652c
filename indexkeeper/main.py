# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Main Entry Point

Every command-line argument is passed through verbatim to the supervised
server, e.g.:

    INDEXKEEPER_CONFIG=/etc/indexkeeper.yaml indexkeeper -listen-ip 0.0.0.0
"""

import asyncio
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import load_config, setup_logging
from .orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> None:
    """Run the supervisor and exit with its exit code."""
    server_args = sys.argv[1:] if argv is None else list(argv)

    config = load_config()
    setup_logging(config.logging)
    logger.info("=== IndexKeeper %s ===", __version__)

    orchestrator = UpdateOrchestrator(config, server_args=server_args)
    exit_code = asyncio.run(orchestrator.run())
    logger.info("Exiting with code %d", exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
