#!/usr/bin/env python3
"""Read one frame from the meter and print every register with its OBIS name.

Usage:
    python tools/display_data.py --port /dev/ttyUSB0
    python tools/display_data.py --protocol D0Protocol --transport SerialRequestResponseTransport
    python tools/display_data.py --transport LocalFileTransport --file frame.bin
"""

import argparse
import logging
import sys

from obis_power_lib import protocol
from obis_power_lib.acquisition import read_once
from obis_power_lib.errors import ObisPowerError
from obis_power_lib.models import Failed, ObisOptions, Settled
from obis_power_lib.parsing import render_registers
from obis_power_lib.registers import obis_name


def main() -> int:
    parser = argparse.ArgumentParser(description="Dump all registers of one meter frame")
    parser.add_argument("--port", default="/dev/ttyUSB0", help="Serial port")
    parser.add_argument("--protocol", default=protocol.PROTOCOL_SML, choices=protocol.PROTOCOLS)
    parser.add_argument(
        "--transport", default=protocol.TRANSPORT_SERIAL_RESPONSE, choices=protocol.TRANSPORTS
    )
    parser.add_argument("--baud", type=int, default=None, help="Baud rate (protocol default)")
    parser.add_argument("--file", default="", help="Frame file for LocalFileTransport")
    parser.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for a frame")
    parser.add_argument("--debug", type=int, default=0, choices=(0, 1, 2))
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        options = ObisOptions(
            protocol=args.protocol,
            transport=args.transport,
            transport_serial_port=args.port,
            transport_serial_baudrate=args.baud,
            transport_local_file_path=args.file,
            request_interval=0.3,
            debug=args.debug,
        )
    except ObisPowerError as e:
        print(f"Invalid options: {e}", file=sys.stderr)
        return 2

    print(f"Reading {args.protocol} via {args.transport}...")
    outcome = read_once(options, deadline_s=args.timeout)

    if isinstance(outcome, Failed):
        print(f"Read failed: {outcome.error}", file=sys.stderr)
        return 1
    if not isinstance(outcome, Settled):
        print(f"No frame within {args.timeout:g}s", file=sys.stderr)
        return 1

    for obis_id, text in render_registers(outcome.registers).items():
        print(f"{obis_id}: {obis_name(obis_id)} = {text}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
