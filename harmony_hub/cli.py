"""
🎮 Harmony Hub command line controller

Connects a HubSession, waits for the hub state, runs one command and exits.
"""

import argparse
import logging
import sys
import threading
import time
from typing import Any, Dict, List, Optional

from . import messages
from .config import load_user_config
from .diagnostics import LogLevel, set_log_level
from .responses import Failure, Response
from .session import HubSession, SessionState

EPILOG = """
╭─────────────────────────────────────────────────────────────────╮
│                     🎮 HARMONY HUB CLI                          │
╰─────────────────────────────────────────────────────────────────╯

🔍 STATE:
  harmony-hub status                   📊 Current activity
  harmony-hub activities               🎯 Configured activities
  harmony-hub devices                  📱 Configured devices
  harmony-hub watch                    👀 Print changes until Ctrl-C

🎯 COMMANDS:
  harmony-hub start <activity>         🚀 Start activity (id or label, -1 = off)
  harmony-hub press <device> <cmd>     🔘 Press a button   (e.g. TV VolumeUp)
  harmony-hub hold <device> <cmd>      ⏬ Begin holding a button
  harmony-hub release <device> <cmd>   ⏫ Release a held button

🔧 CONFIGURATION:
  The hub address comes from --ip or from HUB_IP in a config.py module
  (copy config.sample.py to config.py).
"""

COMMANDS = ("status", "activities", "devices", "watch", "start", "press", "hold", "release")


class CliObserver:
    """Tracks sync progress and optionally prints every change"""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.synced = threading.Event()
        self.lost = threading.Event()
        self.watching = False

    def _print(self, text: str):
        print(text, file=self.out, flush=True)

    def on_activities_changed(self, hub, old):
        if self.watching:
            self._print(f"🎯 Activities: {len(hub.activities or [])} (was {len(old) if old is not None else '?'})")

    def on_current_activity_changed(self, hub, old):
        self.synced.set()
        if self.watching:
            self._print(f"{activity_icon(hub.current_activity)} {describe_activity(hub.current_activity)}"
                        f"  (was {describe_activity(old)})")

    def on_devices_changed(self, hub, old):
        if self.watching:
            self._print(f"📱 Devices: {len(hub.devices or [])} (was {len(old) if old is not None else '?'})")

    def on_connection_lost(self, hub, error):
        self.lost.set()
        self._print(f"❌ Connection lost: {error}")


def describe_activity(record: Optional[Dict[str, Any]]) -> str:
    if record is None:
        return "unknown"
    if str(record.get("id")) == messages.POWER_OFF_ACTIVITY_ID:
        return "OFF"
    return str(record.get("label") or f"ID: {record.get('id')}")


def activity_icon(record: Optional[Dict[str, Any]]) -> str:
    if record is None:
        return "🟡"
    return "⚫" if str(record.get("id")) == messages.POWER_OFF_ACTIVITY_ID else "🟢"


def find_record(records: Optional[List[Dict[str, Any]]], key: str) -> Optional[Dict[str, Any]]:
    """Find a record by id or case-insensitive label"""
    for record in records or ():
        if str(record.get("id")) == key or str(record.get("label", "")).lower() == key.lower():
            return record
    return None


def wait_until_synced(hub: HubSession, observer: CliObserver, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if observer.synced.wait(0.05):
            return True
        if observer.lost.is_set() or hub.state is SessionState.CLOSED:
            return False
    return observer.synced.is_set()


def report(response: Response, success_text: str, out) -> int:
    if isinstance(response, Failure):
        print(f"❌ {response.error}", file=out)
        return 1
    print(f"✅ {success_text}", file=out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harmony-hub",
        description="🎮 Harmony Hub controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("command", choices=COMMANDS, help="Command to run")
    parser.add_argument("target", nargs="?", help="Activity id/label, or device id/label")
    parser.add_argument("action", nargs="?", help="Button command for press/hold/release (e.g. VolumeUp)")
    parser.add_argument("--ip", help="Hub IP address (default: HUB_IP from config.py)")
    parser.add_argument("-t", "--timeout", type=float, default=10.0, help="Seconds to wait for the hub")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose diagnostic output")
    return parser


def main(argv: Optional[List[str]] = None, out=None) -> int:
    out = out or sys.stdout
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "start" and not args.target:
        parser.error("start needs an activity id or label")
    if args.command in ("press", "hold", "release") and not (args.target and args.action):
        parser.error(f"{args.command} needs a device and a command, e.g. '{args.command} TV VolumeUp'")

    user_config = load_user_config()
    ip = args.ip or user_config.hub_ip
    if not ip:
        print("❌ No hub address: pass --ip or set HUB_IP in config.py", file=out)
        return 2

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
        set_log_level(LogLevel.VERBOSE)
    elif user_config.log_level:
        logging.basicConfig(format="%(name)s %(levelname)s %(message)s")
        set_log_level(user_config.log_level)

    observer = CliObserver(out)
    hub = HubSession(ip, observer, config=user_config.session)
    try:
        if not wait_until_synced(hub, observer, args.timeout):
            print(f"❌ Hub {ip} did not answer: {hub.last_error or 'timeout'}", file=out)
            return 1
        return run_command(hub, observer, args, out)
    finally:
        hub.close().result(timeout=args.timeout)


def run_command(hub: HubSession, observer: CliObserver, args, out) -> int:
    if args.command == "status":
        print(f"{activity_icon(hub.current_activity)} {describe_activity(hub.current_activity)}", file=out)
        return 0

    if args.command == "activities":
        current_id = str((hub.current_activity or {}).get("id"))
        for record in hub.activities or []:
            marker = "🟢" if str(record.get("id")) == current_id else "  "
            print(f"{marker} {record.get('id', ''):>10}  {record.get('label', '')}", file=out)
        return 0

    if args.command == "devices":
        for record in hub.devices or []:
            details = " ".join(str(record.get(k)) for k in ("manufacturer", "model") if record.get(k))
            print(f"📱 {record.get('id', ''):>10}  {record.get('label', '')}  {details}".rstrip(), file=out)
        return 0

    if args.command == "watch":
        observer.watching = True
        print(f"👀 Watching {hub.ip4_address} (Ctrl-C to stop)", file=out, flush=True)
        try:
            while not observer.lost.wait(0.5):
                pass
        except KeyboardInterrupt:
            pass
        return 0 if not observer.lost.is_set() else 1

    if args.command == "start":
        record = find_record(hub.activities, args.target)
        activity_id = str(record["id"]) if record else args.target
        response = hub.start_activity(activity_id).result(timeout=hub.config.activity_timeout or None)
        return report(response, describe_activity(record or {"id": activity_id}), out)

    record = find_record(hub.devices, args.target)
    if record is None:
        print(f"❌ Device '{args.target}' not found", file=out)
        return 1
    action = (messages.find_button_action(hub.devices, str(record["id"]), args.action)
              or messages.device_action(record["id"], args.action))
    request = {
        "press": hub.request_button_press_action,
        "hold": hub.request_button_hold_action,
        "release": hub.request_button_release_action,
    }[args.command]
    response = request(action).result(timeout=hub.config.command_timeout or None)
    return report(response, f"{record.get('label', record['id'])} → {args.action} ({args.command})", out)


def run():
    sys.exit(main())
