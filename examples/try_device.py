#!/usr/bin/env python3
"""
Interactive Device Test Script.

This script demonstrates the DeviceRegistry API.
Run it with a board plugged in to connect, run a few commands and list files.
"""

import sys
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mpy_manager import DeviceRegistry, EngineConfig, MpyManagerError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)


def main():
    registry = DeviceRegistry(EngineConfig.from_env())

    ports = registry.list_ports(only_likely=True)
    if not ports:
        print("No likely MicroPython ports found! Is the board plugged in?")
        return
    for info in ports:
        print(f"Found {info.port} ({info.description})")

    port = sys.argv[1] if len(sys.argv) > 1 else ports[0].port
    print(f"\nConnecting to {port}...")
    try:
        device = registry.connect(port)
    except MpyManagerError as e:
        print(f"Failed to connect: {e}")
        return

    print(f"Connected! MicroPython {device.version} at {device.baudrate} baud")
    for issue in device.issues:
        print(f"  Warning: {issue}")

    unsubscribe = registry.subscribe_output(device.id, lambda chunk: print(f"  < {chunk}"))
    try:
        print("\nRunning a command...")
        print(registry.run_command(device.id, "print('Hello from the board')"))

        print("\nRunning a script in paste mode...")
        print(registry.run_script(device.id, "for i in range(3):\n    print('tick', i)"))

        print("\nFiles in /:")
        for entry in registry.list_files(device.id, "/"):
            size = "<dir>" if entry.is_directory else f"{entry.size} bytes"
            print(f"  {entry.name} ({size})")

        print("\nMemory:")
        print(registry.get_memory_info(device.id))

    except KeyboardInterrupt:
        print("\nInterrupted by user.")
    except MpyManagerError as e:
        print(f"\nOperation failed: {e}")
    finally:
        unsubscribe()
        print("\nDisconnecting...")
        registry.disconnect_all()
        print("Done.")


if __name__ == "__main__":
    main()
