#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with settings from LOANLEDGER_* environment variables.
"""

import sys

from loan_ledger.api import run_server
from loan_ledger.config import get_config
from loan_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting loan ledger on {config.api_host}:{config.api_port} ({config.database_url})")

    try:
        run_server()
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}", exc_info=True)
        sys.exit(1)
