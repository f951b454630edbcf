"""
Initialize database tables
Run this once to create tables
"""

import asyncio

from loguru import logger

from leadflow.config import get_settings
from leadflow.core.log import configure_logging
from leadflow.db.database import create_engine, init_db


async def main():
    settings = get_settings()
    configure_logging(settings)

    engine = create_engine(settings.database_url, echo=settings.sql_echo)
    try:
        await init_db(engine)
        logger.info("Database tables created")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
