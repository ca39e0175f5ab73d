"""Serve the API with uvicorn: ``python -m AccountsDiary.server [host] [port]``."""
import sys

import uvicorn

from .app import create_app


def main() -> None:
    host = sys.argv[1] if len(sys.argv) > 1 else '127.0.0.1'
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 8000
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == '__main__':
    main()
