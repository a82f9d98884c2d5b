# -*- coding: utf-8 -*-

# NOTES
# Polls all configured packs. One tick at a time:
# 1) read the wanted packs from the configuration
# 2) close packs that are not wanted anymore or failed after the previous tick stopped waiting, apply changed pack settings
# 3) connect packs that are wanted but not connected
# 4) poll all connected packs in parallel
# 5) close packs that failed to poll, they are connected again on the next tick
# 6) hand the collected data to all listeners

from battery import BmsData, BmsId
from bms.daly import DalyBms
from concurrent.futures import Executor
from typing import Callable, Dict, List, Optional, Set
from utils import DEVICES_SECTION, PACK_SECTION_PREFIX, Config, PollTimeoutError, find_serial_port, logger, run_in_parallel
import threading

DEFAULT_INTERVAL_SECONDS = 10
DEFAULT_POLL_JOIN_TIMEOUT_SECONDS = 60
DEFAULT_CAPACITY = 280

BmsListener = Callable[[List[BmsData]], None]


class BmsService:
    def __init__(
        self,
        executor: Executor,
        config: Config,
        port_finder: Callable[[str], Optional[str]] = find_serial_port,
        connection_factory: Callable[[str, BmsId, Config], DalyBms] = DalyBms,
    ):
        self.executor = executor
        self.config = config
        self.port_finder = port_finder
        self.connection_factory = connection_factory

        self.connected: Dict[BmsId, DalyBms] = {}
        self.listeners: List[BmsListener] = []

        # ticks and SoC writes never run at the same time
        self._tick_lock = threading.Lock()
        # packs with a poll dispatched but not finished, they are not dispatched again until done
        self._in_flight: Set[BmsId] = set()
        self._in_flight_lock = threading.Lock()
        # packs whose poll failed, closed by the tick that sees them first, late failures included
        self._failed: Set[BmsId] = set()
        self._failed_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_listener(self, listener: BmsListener) -> None:
        self.listeners.append(listener)

    def connected_packs(self) -> List[BmsId]:
        return list(self.connected.keys())

    def target_devices(self) -> List[BmsId]:
        """The packs that should be connected, as currently configured."""
        devices = []
        for usb_id, bms_id in self.config.get_section(DEVICES_SECTION):
            if not bms_id:
                logger.warning(f"No pack id configured for {usb_id}, ignoring it")
                continue
            section = PACK_SECTION_PREFIX + bms_id
            devices.append(
                BmsId(
                    usb_id=usb_id,
                    bms_id=bms_id,
                    display_name=self.config.get_str("DISPLAY_NAME", bms_id, section),
                    capacity=self.config.get_int("CAPACITY", DEFAULT_CAPACITY, section),
                )
            )
        return devices

    def tick(self) -> bool:
        with self._tick_lock:
            return self.tick_locked()

    def tick_locked(self) -> bool:
        logger.debug("Running poll cycle")
        self.config.reload()

        # 1) find out which devices to connect to
        target_devices = self.target_devices()

        # 2) disconnect if not wanted anymore or failed after the last cycle gave up waiting
        self.close_connections({d for d in self.connected if d not in target_devices})
        self.close_failed_connections()
        self.apply_pack_settings(target_devices)

        # 3) connect what is missing
        for device in target_devices:
            if device not in self.connected:
                self.connect(device)

        # 4) query all data
        def poll(item):
            device, connection = item
            try:
                data = connection.poll()
                if data is None:
                    with self._failed_lock:
                        self._failed.add(device)
                return data
            finally:
                with self._in_flight_lock:
                    self._in_flight.discard(device)

        pollable = self.pollable_connections()
        try:
            collected_data = run_in_parallel(
                self.executor,
                pollable,
                poll,
                self.config.get_float("POLL_JOIN_TIMEOUT_SECONDS", DEFAULT_POLL_JOIN_TIMEOUT_SECONDS),
            )
        finally:
            # 5) close failed connections, even when the cycle ran out of time
            self.close_failed_connections()

        # 6) publish data
        for data in collected_data:
            logger.info(
                f"{data.bms_id.bms_id} - {data.voltage:.1f}V {data.current:.1f}A SoC={data.soc:.1f}% "
                f"cells={data.min_cell_voltage:.3f}..{data.max_cell_voltage:.3f}V temp={data.min_temp}..{data.max_temp}C"
            )
        self.notify_listeners(collected_data)

        return True

    def connect(self, device: BmsId) -> None:
        try:
            port = self.port_finder(device.usb_id)
            if port is None:
                raise LookupError(f"Could not lookup serial port for {device}")
            self.connected[device] = self.connection_factory(port, device, self.config)
        except Exception:
            logger.exception(f"Could not connect to {device}")

    def pollable_connections(self) -> list:
        """Connected packs without a running poll. The returned packs are marked as in flight."""
        pollable = []
        with self._in_flight_lock:
            for device, connection in self.connected.items():
                if device in self._in_flight:
                    logger.warning(f"{device.bms_id} - Previous poll still running, skipping this cycle")
                    continue
                self._in_flight.add(device)
                pollable.append((device, connection))
        return pollable

    def close_connections(self, devices: Set[BmsId]) -> None:
        for device in list(devices):
            connection = self.connected.pop(device, None)
            if connection is not None:
                logger.info(f"Closing {device}")
                connection.close()

    def close_failed_connections(self) -> None:
        with self._failed_lock:
            failed = set(self._failed)
            self._failed.clear()
        self.close_connections(failed)

    def apply_pack_settings(self, target_devices: List[BmsId]) -> None:
        """Hand changed display names and capacities to the open sessions, the port stays connected."""
        for device in target_devices:
            connection = self.connected.get(device)
            if connection is None:
                continue
            current = next(d for d in self.connected if d == device)
            if (current.display_name, current.capacity) == (device.display_name, device.capacity):
                continue
            logger.info(f"{device.bms_id} - Pack settings changed to name={device.display_name} capacity={device.capacity}Ah")
            del self.connected[current]
            self.connected[device] = connection
            connection.bms_id = device

    def close_all(self) -> None:
        with self._tick_lock:
            self.close_connections(set(self.connected))

    def notify_listeners(self, collected_data: List[BmsData]) -> None:
        for listener in self.listeners:
            self.executor.submit(self.run_listener, listener, collected_data)

    @staticmethod
    def run_listener(listener: BmsListener, collected_data: List[BmsData]) -> None:
        try:
            listener(collected_data)
        except Exception:
            logger.exception("Listener failed to process data")

    def write_soc(self, bms_id: str, soc: int) -> bool:
        """Write the SoC to every connected pack with this logical id. Waits until a running poll cycle has finished."""
        result = False
        matched = False
        with self._tick_lock:
            for device, connection in list(self.connected.items()):
                if device.bms_id == bms_id and device not in self._in_flight:
                    matched = True
                    result = connection.write_soc(soc) or result
        if not matched:
            logger.warning(f"No idle connected pack with id {bms_id}, SoC not written")
        return result

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="bms-poller")
        self._thread.start()
        logger.info("BmsService started")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.close_all()
        logger.info("BmsService stopped")

    def run(self) -> None:
        """Run ticks until stopped. A failed tick is logged and the loop carries on with the next interval."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except PollTimeoutError:
                logger.exception("Poll cycle did not finish in time")
            except Exception:
                logger.exception("Poll cycle failed")
            self._stop_event.wait(self.config.get_float("INTERVAL_SECONDS", DEFAULT_INTERVAL_SECONDS))
