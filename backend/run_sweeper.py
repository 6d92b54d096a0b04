"""Run the expiry sweeper as a standalone process."""

import logging
import time

from authserver.services.expiry_sweeper import expiry_sweeper


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    expiry_sweeper.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        expiry_sweeper.stop()


if __name__ == "__main__":
    main()
