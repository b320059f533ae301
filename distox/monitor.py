#!/usr/bin/env python3
"""
monitor.py -- Console survey monitor for a DistoX on a serial port.

Connects, acknowledges every packet, runs smart-mode triple detection and
prints one line per leg (splays have no "To" station).

Usage
-----
  python3 -m distox.monitor                        # auto-detect port
  python3 -m distox.monitor /dev/rfcomm0           # explicit port
  python3 -m distox.monitor --csv > shots.csv      # log to CSV
  python3 -m distox.monitor --no-smart             # every shot is a leg
  python3 -m distox.monitor --read-coeffs          # dump calibration

Settings come from ``distox.yaml`` (``--config``) and ``DISTOX_*``
environment variables; command-line options win.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time

from .config import load_config, setup_logging
from .connection import ConnectionManager, ConnectionState
from .errors import MemoryExchangeTimeout
from .measurement import Leg, MeasurementService
from .session import CalibrationSession
from .transport import DistoXDevice, SerialTransport, find_port

logger = logging.getLogger(__name__)


# ── Output ───────────────────────────────────────────────────────────────────

class LegPrinter:
    """Console / CSV sink for legs coming out of the measurement service."""

    def __init__(self, csv: bool = False, out=None):
        self.csv = csv
        self.out = out or sys.stdout
        self.splays = 0
        self.legs = 0

    def header(self) -> None:
        if self.csv:
            print("type,from,to,distance,azimuth,inclination", file=self.out)
        else:
            print(f"{'From':>6} {'To':>6} {'Dist':>8} {'Azi':>7} {'Incl':>7}", file=self.out)
            print("-" * 40, file=self.out)

    def _row(self, kind: str, leg: Leg) -> None:
        if self.csv:
            to = "" if leg.to_station is None else str(leg.to_station)
            print(f"{kind},{leg.from_station},{to},{leg.distance:.3f},"
                  f"{leg.azimuth:.2f},{leg.inclination:.2f}", file=self.out, flush=True)
        else:
            print(leg, file=self.out, flush=True)

    def on_splay(self, leg: Leg) -> None:
        self.splays += 1
        self._row("splay", leg)

    def on_stretch(self, leg: Leg) -> None:
        self.legs += 1
        self._row("leg", leg)

    def on_triple(self, removed: int, leg: Leg) -> None:
        self.splays -= removed
        self.legs += 1
        if not self.csv:
            print(f"  >> last {removed} splays are one survey shot:", file=self.out)
        self._row("leg", leg)


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="DistoX survey monitor")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=None)
    ap.add_argument("--config", default=None, help="YAML config file (default distox.yaml)")
    ap.add_argument("--csv", action="store_true", help="CSV output mode")
    ap.add_argument("--no-smart", action="store_true", help="Disable triple detection")
    ap.add_argument("--read-coeffs", action="store_true",
                    help="Read and print calibration coefficients, then exit")
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(cfg.logging)
    if args.no_smart:
        cfg.settings.smart_mode = False

    port = args.port or cfg.serial.port or find_port()
    if not port:
        print("ERROR: No serial port found.", file=sys.stderr)
        return 1

    transport = SerialTransport(baud=args.baud or cfg.serial.baud,
                                read_timeout=cfg.serial.timeout)
    conn = ConnectionManager(transport, settings=cfg.settings,
                             connect_timeout=cfg.serial.connect_timeout)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    if not conn.connect(DistoXDevice(name="DistoX", address=port)):
        print(f"ERROR: Cannot connect to {port}: {conn.last_error}", file=sys.stderr)
        conn.disconnect()
        return 1

    try:
        if args.read_coeffs:
            return _read_coefficients(conn)
        return _monitor(conn, cfg.settings, args.csv, stop)
    finally:
        conn.disconnect()


def _read_coefficients(conn: ConnectionManager) -> int:
    session = CalibrationSession(conn)
    try:
        coeff = session.read_coefficients()
    except MemoryExchangeTimeout as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        session.close()
    if coeff is None:
        print(f"ERROR: {session.last_error}", file=sys.stderr)
        return 1
    print(coeff.summary())
    print("  Raw: " + coeff.to_bytes().hex(" "))
    return 0


def _monitor(conn: ConnectionManager, settings, csv: bool, stop: threading.Event) -> int:
    printer = LegPrinter(csv=csv)
    service = MeasurementService(settings)
    service.cross_section_ready.connect(printer.on_splay)
    service.stretch_ready.connect(printer.on_stretch)
    service.triple_replace.connect(printer.on_triple)
    service.attach(conn)

    if not csv:
        print(f"\n{'='*50}")
        print(f"  DistoX monitor -- {conn.connected_device}")
        print(f"  Smart mode: {'on' if settings.smart_mode else 'off'}  |  "
              f"Direction: {settings.shot_direction.value}")
        print(f"{'='*50}\n")
    printer.header()

    t0 = time.monotonic()
    while not stop.wait(0.2):
        if conn.state is ConnectionState.DISCONNECTED and not conn.reconnect_pending:
            print("Link lost.", file=sys.stderr)
            break
    service.detach(conn)

    if not csv:
        elapsed = time.monotonic() - t0
        print(f"\n{'='*50}")
        print(f"  {printer.legs} legs, {printer.splays} splays in {elapsed:.0f} s")
        print(f"{'='*50}\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
