"""
Server configuration module.

Holds every tunable of a chat instance. Values come from the constructor,
or from CHATHUB_* environment variables through ServerConfig.from_env().
"""

import os

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 50051
DEFAULT_INSTANCE_ID = "server1"

DEFAULT_GROUPS = [
    ("General", "General discussions"),
    ("Tech Talk", "Technology discussions"),
    ("Random", "Random chat"),
    ("Project Help", "Get help with projects"),
]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


class ServerConfig:
    """Chat server configuration."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        instance_id: str = DEFAULT_INSTANCE_ID,
        typing_window: float = 3.0,
        typing_sweep_interval: float = 60.0,
        typing_stale_after: float = 10.0,
        default_history_page: int = 20,
        seed_default_groups: bool = True,
        log_dir: str = None,
        log_level: str = "INFO",
    ):
        self.host = host
        self.port = port
        self.instance_id = instance_id

        # Typing indicators (seconds)
        self.typing_window = typing_window
        self.typing_sweep_interval = typing_sweep_interval
        self.typing_stale_after = typing_stale_after

        # History scroll-back page size for messages:more without a limit
        self.default_history_page = default_history_page

        self.seed_default_groups = seed_default_groups

        # Logging configuration
        self.log_dir = log_dir
        self.log_level = log_level

    @property
    def listen_addr(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls, environ=None) -> "ServerConfig":
        """Build a config from CHATHUB_* environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls()
        if "CHATHUB_HOST" in env:
            config.host = env["CHATHUB_HOST"]
        if "CHATHUB_PORT" in env:
            config.port = int(env["CHATHUB_PORT"])
        if "CHATHUB_INSTANCE_ID" in env:
            config.instance_id = env["CHATHUB_INSTANCE_ID"]
        if "CHATHUB_TYPING_WINDOW" in env:
            config.typing_window = float(env["CHATHUB_TYPING_WINDOW"])
        if "CHATHUB_TYPING_SWEEP" in env:
            config.typing_sweep_interval = float(env["CHATHUB_TYPING_SWEEP"])
        if "CHATHUB_TYPING_STALE" in env:
            config.typing_stale_after = float(env["CHATHUB_TYPING_STALE"])
        if "CHATHUB_HISTORY_PAGE" in env:
            config.default_history_page = int(env["CHATHUB_HISTORY_PAGE"])
        if "CHATHUB_SEED_GROUPS" in env:
            config.seed_default_groups = _env_bool(env["CHATHUB_SEED_GROUPS"])
        if "CHATHUB_LOG_DIR" in env:
            config.log_dir = env["CHATHUB_LOG_DIR"]
        if "CHATHUB_LOG_LEVEL" in env:
            config.log_level = env["CHATHUB_LOG_LEVEL"]
        return config
