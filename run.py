#!/usr/bin/env python3
"""
Library Fines Entry Point

Starts the daily fine jobs and serves the admin API.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from library_fines.api import run_server
from library_fines.config import get_config
from library_fines.logging_config import setup_logging
from library_fines.system import LibraryFineSystem


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )

    system = LibraryFineSystem(config)
    system.start()
    logger.info(f"Library fines API listening on http://{config.api_host}:{config.api_port}")

    try:
        run_server(system, host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down library fines service")
    except Exception as e:
        logger.exception(f"Error starting server: {e}")
        sys.exit(1)
    finally:
        system.shutdown()
