"""Run the ccarbon API server.

Usage:
    python -m ccarbon.scripts.serve
    # or
    uvicorn ccarbon.main:app
"""

import uvicorn

from ccarbon import config


def main() -> None:
    uvicorn.run("ccarbon.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
