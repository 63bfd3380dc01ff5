"""Create the Allegro schema in the configured database."""
import logging

from allegro.db import get_pool, init_db


def main():
    logging.basicConfig(level=logging.INFO)
    init_db(get_pool())
    get_pool().closeall()

if __name__ == "__main__":
    main()
