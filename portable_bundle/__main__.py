import sys

from portable_bundle.cli import main


if __name__ == "__main__":
    sys.exit(main())
