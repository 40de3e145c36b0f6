"""
Snake Relay - two-player Snake relay server.

Usage:
    python main.py --port 7777
    python main.py --transport udp --idle-timeout 30
"""
from snake_relay.network.server import main


if __name__ == "__main__":
    main()
