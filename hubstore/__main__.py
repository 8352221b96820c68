"""Run hubstore: python3 -m hubstore [hub|comparator]"""

import sys

import uvicorn

from hubstore.api.app import create_comparator_app, create_hub_app
from hubstore.config import ComparatorSettings, Settings


def main() -> None:
    settings = Settings()
    uvicorn.run(create_hub_app(settings), host=settings.host, port=settings.port)


def main_comparator() -> None:
    settings = ComparatorSettings()
    uvicorn.run(create_comparator_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    if sys.argv[1:2] == ["comparator"]:
        main_comparator()
    else:
        main()
