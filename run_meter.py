#!/usr/bin/env python3
"""
Run the meter service from the shell: validate, then poll until Ctrl-C.

Prints every published active power value. Example:
    python run_meter.py --port /dev/ttyUSB0 --interval 10
"""

import argparse
import logging
import time

from obis_power_lib import protocol
from obis_power_lib.controller import MeterController
from obis_power_lib.models import PlatformConfig


class PrintSink:
    """Prints each resolved active power value."""

    def publish_active_power(self, value: float) -> None:
        direction = "import" if value >= 0 else "export"
        print(f"{time.strftime('%H:%M:%S')}  {value:10.1f} W  ({direction})")


def main() -> int:
    parser = argparse.ArgumentParser(description="Poll an OBIS smart meter")
    parser.add_argument("--port", default="/dev/ttyUSB0", help="Serial port")
    parser.add_argument("--protocol", default=protocol.PROTOCOL_SML, choices=protocol.PROTOCOLS)
    parser.add_argument(
        "--transport", default=protocol.TRANSPORT_SERIAL_RESPONSE, choices=protocol.TRANSPORTS
    )
    parser.add_argument("--file", default="", help="Frame file for LocalFileTransport")
    parser.add_argument("--interval", type=float, default=protocol.POLL_INTERVAL_S)
    parser.add_argument("--history", default="history", help="History directory")
    parser.add_argument("--no-history", action="store_true", help="Disable history files")
    parser.add_argument("--debug", type=int, default=0, choices=(0, 1, 2))
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = PlatformConfig(
        serial_port=args.port,
        protocol=args.protocol,
        transport=args.transport,
        local_file_path=args.file,
        poll_interval_s=args.interval,
        history_enabled=not args.no_history,
        history_path=args.history,
        debug=args.debug,
    )

    print("=" * 70)
    print(f"Meter: {args.protocol} via {args.transport} ({args.file or args.port})")
    print(f"Poll interval: {args.interval:g}s")
    print("Validating meter, this can take up to "
          f"{config.validation_timeout_s:.0f}s...")
    print("=" * 70)

    controller = MeterController(config)
    if not controller.initialize():
        print("Meter validation failed, see log above")
        return 1

    identity = controller.identity
    assert identity is not None and controller.loop is not None
    print(f"Meter {identity.product_name}, serial {identity.serial}")
    print(f"Sensors: {', '.join(sorted(controller.sensors)) or 'none'}")
    print("Press Ctrl-C to stop")
    print()

    controller.loop.subscribe_active_power(PrintSink())

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        controller.shutdown()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
