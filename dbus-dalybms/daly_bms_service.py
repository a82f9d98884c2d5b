#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# NOTES
# Entry point. Wires the poller, the MQTT client and the virtual battery together and runs until SIGINT or SIGTERM.

from bmsservice import BmsService
from concurrent.futures import ThreadPoolExecutor
from mqtt_client import VictronMqttClient
from utils import DRIVER_VERSION, Config, logger, setup_logging
from virtual_battery import VirtualBatteryService
import argparse
import signal
import sys
import threading


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bridges Daly smart BMS packs to a Victron GX device as one battery")
    parser.add_argument("-c", "--config", help="custom config.ini overriding config.default.ini")
    parser.add_argument("-l", "--logfile", help="also write the log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug messages")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = Config(args.config)
    setup_logging("DEBUG" if args.verbose else config.get_str("LOGGING", "INFO"), args.logfile)

    logger.info(f"Starting daly-bms-service v{DRIVER_VERSION}")

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    with ThreadPoolExecutor(max_workers=config.get_int("WORKER_THREADS", 8), thread_name_prefix="daly") as executor:
        bms_service = BmsService(executor, config)
        mqtt_client = VictronMqttClient(config, executor)
        VirtualBatteryService(config, mqtt_client, bms_service)

        mqtt_client.connect()

        bms_service.start()
        try:
            while not stop_event.wait(1):
                pass
        finally:
            bms_service.stop(config.get_float("POLL_JOIN_TIMEOUT_SECONDS", 60))
            mqtt_client.disconnect()

    logger.info("Stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
