#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with the loan ledger.
"""

import sys
from pathlib import Path

import uvicorn

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_ledger.api.auth import get_ledger_system
from loan_ledger.config import get_config
from loan_ledger.logging_config import setup_logging
from loan_ledger.seed import seed_sample_data


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = get_ledger_system()
    if config.seed_sample_data and seed_sample_data(system):
        logger.info("Sample data seeded (creditor admin@uetcl.local, debtors alice@example.com and bob@example.com)")

    logger.info(f"Loan ledger API at http://{config.api_host}:{config.api_port} (docs at /docs)")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
