"""
Settings loader.

Reads config/settings.yaml (see config/settings.example.yaml) and lets
environment variables override endpoints and secrets:

    SIGNAL_CLI_URL, SIGNAL_BOT_NUMBER, RENDER_URL,
    AWBW_WS_BASE, AWBW_PAGE_BASE, COMTOWER_DATA_DIR
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_PATHS = [
    Path('./config/settings.yaml'),
    Path('../config/settings.yaml'),
    Path.home() / '.config/comtower/settings.yaml',
]


@dataclass(frozen=True)
class Timing:
    reconnect_delay: float = 5
    game_end_poll_interval: float = 1800   # 30 min page poll
    hourly_sweep_interval: float = 3600
    patch_poll_interval: float = 10
    send_timeout: float = 30
    render_timeout: float = 20
    scrape_timeout: float = 15


@dataclass(frozen=True)
class Settings:
    bridge_url: str
    bot_number: str
    render_url: Optional[str] = None
    include_image: bool = False
    ws_base: str = 'wss://awbw.amarriner.com'
    page_base: str = 'https://awbw.amarriner.com'
    data_dir: Path = Path('./data')
    retention_days: float = 14          # audit records older than this are pruned
    timing: Timing = field(default_factory=Timing)

    def game_link(self, game_id: str) -> str:
        """Permanent link to a game's page."""
        return f"{self.page_base}/game.php?games_id={game_id}"

    def socket_url(self, game_id: str) -> str:
        return f"{self.ws_base}/node/game/{game_id}"


def read_config_file(paths: list[Path] = None) -> dict:
    """Return the first settings.yaml found, or an empty dict."""
    for path in paths or CONFIG_PATHS:
        if path.exists():
            logger.info(f"Loading config: {path}")
            with open(path) as f:
                return yaml.safe_load(f) or {}
    logger.warning("No settings.yaml found, relying on environment variables")
    return {}


def build_settings(config: dict, env: dict = None) -> Settings:
    """
    Merge the YAML config with environment overrides.

    Raises:
        ConfigError: when the bridge URL or bot number is missing
    """
    env = os.environ if env is None else env

    signal_cfg = config.get('signal', {}) or {}
    upstream_cfg = config.get('upstream', {}) or {}
    render_cfg = config.get('render', {}) or {}
    store_cfg = config.get('store', {}) or {}
    timing_cfg = config.get('timing', {}) or {}

    bridge_url = (env.get('SIGNAL_CLI_URL') or signal_cfg.get('bridge_url') or '').strip()
    bot_number = (env.get('SIGNAL_BOT_NUMBER') or signal_cfg.get('bot_number') or '').strip()

    if not bridge_url:
        raise ConfigError("Signal bridge URL missing (signal.bridge_url or SIGNAL_CLI_URL)")
    if not bot_number:
        raise ConfigError("Signal bot number missing (signal.bot_number or SIGNAL_BOT_NUMBER)")

    unknown = set(timing_cfg) - set(Timing.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Unknown timing keys: {', '.join(sorted(unknown))}")

    return Settings(
        bridge_url=bridge_url.rstrip('/'),
        bot_number=bot_number,
        render_url=env.get('RENDER_URL') or render_cfg.get('url'),
        include_image=bool(render_cfg.get('include_image', False)),
        ws_base=(env.get('AWBW_WS_BASE') or upstream_cfg.get('ws_base') or Settings.ws_base).rstrip('/'),
        page_base=(env.get('AWBW_PAGE_BASE') or upstream_cfg.get('page_base') or Settings.page_base).rstrip('/'),
        data_dir=Path(env.get('COMTOWER_DATA_DIR') or store_cfg.get('path') or './data'),
        retention_days=float(store_cfg.get('retention_days', Settings.retention_days)),
        timing=Timing(**timing_cfg),
    )


def load_settings() -> Settings:
    """Load settings from disk and environment."""
    return build_settings(read_config_file())
