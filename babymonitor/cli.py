#!/usr/bin/env python3
"""
Command line entry point.

  babymonitor [CONFIG] [--host H] [--port P] [--log-level L] [--no-keys]

- SIGINT/SIGTERM stop the monitor cleanly
- Esc on the controlling terminal stops the monitor cleanly
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

from babymonitor import config
from babymonitor.capture import CaptureError
from babymonitor.encoder import EncoderError
from babymonitor.monitor import BroadcastLoop, build_monitor

log = logging.getLogger("monitor")

KEY_ESC = b"\x1b"


class KeyWatcher(threading.Thread):
    """Puts the terminal in cbreak mode and stops the monitor on Esc."""

    def __init__(self, loop: BroadcastLoop):
        import termios
        import tty

        super().__init__(name="key-watcher", daemon=True)
        self.loop = loop
        self.fd = sys.stdin.fileno()
        self._termios = termios
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)

    def run(self):
        while True:
            try:
                ch = os.read(self.fd, 1)
            except OSError:
                return
            if not ch:
                return
            if ch == KEY_ESC:
                self.loop.request_stop("escape key")
                return

    def restore(self) -> None:
        self._termios.tcsetattr(self.fd, self._termios.TCSADRAIN, self.old_settings)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="babymonitor",
        description=(
            "Listen on a microphone, trigger URLs when the level stays high for "
            "too long, and stream the sound as MP3."
        ),
    )
    parser.add_argument("config", nargs="?", help="Config file to use (JSON or YAML).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override HTTP port (defaults to config).")
    parser.add_argument("--log-level", help="Python logging level (defaults to config, INFO).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--no-keys", action="store_true", help="Do not watch the terminal for Esc.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        cfg = config.get_cfg(args.config)
        if args.host:
            cfg["http_host"] = args.host
        if args.port:
            cfg["http_port"] = args.port
        settings = config.settings_from_cfg(cfg)
    except config.ConfigError as exc:
        log.error("%s", exc)
        return 1

    level_name = (args.log_level or settings.log_level).upper()
    logging.getLogger().setLevel(getattr(logging, level_name, logging.INFO))

    log.info("Starting baby monitor...")
    try:
        loop = build_monitor(settings, access_log=args.access_log)
    except (CaptureError, EncoderError, OSError) as exc:
        log.error("Startup failed: %s", exc)
        return 1

    def handle_signal(signum, frame):  # noqa
        loop.request_stop(f"signal {signal.Signals(signum).name}")

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    watcher: KeyWatcher | None = None
    if not args.no_keys and sys.stdin.isatty():
        try:
            watcher = KeyWatcher(loop)
            watcher.start()
        except Exception as exc:  # noqa: BLE001
            log.debug("terminal key watcher unavailable: %r", exc)
            watcher = None

    try:
        result = loop.run()
    finally:
        if watcher is not None:
            watcher.restore()

    if not result.clean:
        log.error("Stopped after %d frames: %s (%s)", result.frames, result.reason, result.error)
        return 1
    log.info("Stopped after %d frames: %s", result.frames, result.reason)
    return 0


if __name__ == "__main__":
    sys.exit(main())
