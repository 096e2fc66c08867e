# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""Entry point: ``python -m roomsonos`` or the ``roomos-sonos`` script."""

import argparse
import asyncio
import logging
import os
import sys


def main(argv=None):
    parser = argparse.ArgumentParser(description="Control Sonos groups from a RoomOS touch panel")
    parser.add_argument("--config", help="path to config.json")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ... (default from config)")
    args = parser.parse_args(argv)

    if args.config:
        os.environ["ROOMOS_SONOS_CONFIG"] = args.config

    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(name)s: %(message)s')

    # Imported after the config path is known
    from .lib.config import cfg
    from .service import SonosService

    level = (args.log_level or cfg("log_level", default="INFO")).upper()
    logging.getLogger().setLevel(level)

    service = SonosService()
    return asyncio.run(service.run())


if __name__ == "__main__":
    sys.exit(main())
