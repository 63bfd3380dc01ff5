import argparse
import os

from allegro.api import run_server


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Allegro catalog server")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 9000)))
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    args = parser.parse_args()
    run_server(args.host, args.port, args.database_url)


if __name__ == "__main__":
    main()
