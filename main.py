import sys

from gatt_server import main

if __name__ == "__main__":
    sys.exit(main())
