import logging
import sys
from typing import List, Optional

from gymdesk.api import create_app
from gymdesk.config import configure_logging, load_config
from gymdesk.database import initialize_database

USAGE = "Usage: python -m gymdesk.main [init_db]"


def main(argv: Optional[List[str]] = None) -> int:
    """
    Initializes the database and serves the JSON API.
    With `init_db` it only creates the schema and seeds the default plans.
    """
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] not in ("init_db",):
        print(USAGE)
        return 2

    config = load_config()
    configure_logging(config.log_level)

    initialize_database(config.db_file, seed_plans=config.seed_plans)
    print(f"Database initialized at: {config.db_file}")
    if argv and argv[0] == "init_db":
        return 0

    app = create_app(config=config)
    logging.info(f"Serving gymdesk API on http://{config.host}:{config.port}")
    app.run(host=config.host, port=config.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
