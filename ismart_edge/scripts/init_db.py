"""
Database initialization script.

Creates all tables used by the edge functions.
Run this script before starting the API for the first time.

Usage:
    python -m ismart_edge.scripts.init_db [--config config/config.yaml]
"""

import argparse
import logging

from ismart_edge.core.config_loader import load_config
from ismart_edge.core.database_handler import DatabaseHandler
from ismart_edge.core.models import ALL_MODELS, db


logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


def main():
    """Initialize database and create all tables."""
    parser = argparse.ArgumentParser(description="Create the i-SMART edge function tables")
    parser.add_argument("--config", default="config/config.yaml", help="Configuration file path")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
        database = DatabaseHandler.initialize_database(config['database']['url'], create_tables=False)

        with db.atomic():
            logger.info("Creating database tables...")
            database.create_tables(ALL_MODELS, safe=True)
            logger.info(f"Created {len(ALL_MODELS)} tables")

        # Verify tables exist
        tables = database.get_tables()
        missing = [m._meta.table_name for m in ALL_MODELS if m._meta.table_name not in tables]
        if missing:
            raise RuntimeError(f"Tables missing after creation: {missing}")
        logger.info(f"Tables in database: {tables}")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise
    finally:
        DatabaseHandler.close()


if __name__ == "__main__":
    main()
