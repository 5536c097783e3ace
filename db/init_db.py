import logging

from db import database
from db import models  # noqa: F401

logger = logging.getLogger(__name__)

def main():
    database.Base.metadata.create_all(bind=database.get_engine())
    logger.info("Database ready: tables created")

if __name__ == "__main__":
    main()
