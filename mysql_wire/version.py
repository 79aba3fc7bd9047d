__version__ = "0.1.0"


def main(name: str) -> None:
    if name == "__main__":
        print(__version__)


main(__name__)
