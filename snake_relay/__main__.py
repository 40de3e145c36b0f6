"""Run the relay server: python -m snake_relay [--port 7777] [--transport udp]"""

from .network.server import main

if __name__ == '__main__':
    main()
