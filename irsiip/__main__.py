import sys

from .irsiip_config import main


def run() -> None:
    main(sys.argv)


if __name__ == "__main__":
    run()
