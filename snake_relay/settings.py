"""Server settings - loads and saves relay configuration."""
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Settings file location (in user's home directory)
SETTINGS_DIR = Path.home() / ".snake_relay"
SETTINGS_FILE = SETTINGS_DIR / "settings.json"

TRANSPORTS = ('tcp', 'udp')
STATE_COMMANDS = ('GAME', 'GAMESTATE')

# Default settings
DEFAULT_SETTINGS = {
    "host": "0.0.0.0",
    "port": 7777,
    "transport": "tcp",
    "certfile": None,
    "keyfile": None,
    "idle_timeout": None,         # seconds; None disables idle disconnects
    "lobby_timeout": 60.0,        # seconds an unseated datagram client may linger; None disables
    "state_command": "GAME",      # wire kind for lifecycle notifications
    "send_player_id": False,      # also send YOUR_ID|<slot> on join
    "close_on_game_over": False,  # end the session instead of returning to READY
    "max_frame_size": 4096,
    "log_level": "INFO",
}


@dataclass
class ServerSettings:
    """Relay server configuration."""
    host: str = DEFAULT_SETTINGS["host"]
    port: int = DEFAULT_SETTINGS["port"]
    transport: str = DEFAULT_SETTINGS["transport"]
    certfile: Optional[str] = None
    keyfile: Optional[str] = None
    idle_timeout: Optional[float] = None
    lobby_timeout: Optional[float] = DEFAULT_SETTINGS["lobby_timeout"]
    state_command: str = DEFAULT_SETTINGS["state_command"]
    send_player_id: bool = False
    close_on_game_over: bool = False
    max_frame_size: int = DEFAULT_SETTINGS["max_frame_size"]
    log_level: str = DEFAULT_SETTINGS["log_level"]

    def __post_init__(self):
        self.transport = str(self.transport).lower()
        self.state_command = str(self.state_command).upper()
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {self.transport!r} (expected one of {TRANSPORTS})")
        if self.state_command not in STATE_COMMANDS:
            raise ValueError(f"Unknown state command: {self.state_command!r} (expected one of {STATE_COMMANDS})")
        if self.lobby_timeout is not None and self.lobby_timeout <= 0:
            self.lobby_timeout = None
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            self.idle_timeout = None

    @property
    def use_tls(self) -> bool:
        return bool(self.certfile and self.keyfile)

    @classmethod
    def from_dict(cls, data: dict) -> 'ServerSettings':
        """Build from a dict, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


def ensure_settings_dir(path: Path = SETTINGS_FILE):
    """Create settings directory if it doesn't exist."""
    path.parent.mkdir(parents=True, exist_ok=True)


def load_settings(path: Optional[Path] = None) -> ServerSettings:
    """Load settings from file, or return defaults if file doesn't exist.

    A file that cannot be read, is not a JSON object, or holds invalid
    values is logged and ignored as a whole.
    """
    path = Path(path) if path else SETTINGS_FILE
    settings = DEFAULT_SETTINGS.copy()
    try:
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                saved = json.load(f)
            if not isinstance(saved, dict):
                raise TypeError(f"expected a JSON object, got {type(saved).__name__}")
            # Merge with defaults (in case new settings were added)
            settings.update(saved)
            result = ServerSettings.from_dict(settings)
            logger.info(f"Settings loaded from {path}")
            return result
        logger.debug(f"Settings file not found at {path}, using defaults")
    except (ValueError, TypeError, IOError) as e:
        logger.warning(f"Failed to load settings from {path}: {e}")
    return ServerSettings.from_dict(DEFAULT_SETTINGS)


def save_settings(settings: ServerSettings, path: Optional[Path] = None):
    """Save settings to file."""
    path = Path(path) if path else SETTINGS_FILE
    ensure_settings_dir(path)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(settings.to_dict(), f, indent=2)
    logger.info(f"Settings saved to {path}")
