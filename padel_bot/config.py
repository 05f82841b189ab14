import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Bot configuration settings"""

    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    DISCORD_GUILD_IDS = os.getenv('DISCORD_GUILD_IDS', '')  # Comma-separated for multi-guild support
    OWNER_DISCORD_ID = int(os.getenv('OWNER_DISCORD_ID', 0))

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///padel.db')

    # Bot settings
    COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!')
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    SQL_ECHO = os.getenv('SQL_ECHO', 'False').lower() == 'true'

    # Logging
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_FILE_PREFIX = os.getenv('LOG_FILE_PREFIX', 'padel_settlement')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'

    # Glicko-2 defaults for new profiles
    STARTING_RATING = 1500.0
    STARTING_RD = 350.0
    STARTING_VOL = 0.06
    MAX_RD = 350.0

    # Confirmation window
    CONFIRMATION_WINDOW_HOURS = float(os.getenv('CONFIRMATION_WINDOW_HOURS', 24))
    DEMO_MODE = os.getenv('DEMO_MODE', 'False').lower() == 'true'
    DEMO_CONFIRMATION_WINDOW_HOURS = float(os.getenv('DEMO_CONFIRMATION_WINDOW_HOURS', 1))

    # Voting thresholds
    QUORUM_SIZE = 4            # Every participant of a 2v2 match
    REPORT_THRESHOLD = int(os.getenv('REPORT_THRESHOLD', 2))

    # Expiry sweep
    SWEEP_INTERVAL_MINUTES = float(os.getenv('SWEEP_INTERVAL_MINUTES', 5))
    SWEEP_LOCK_NAME = os.getenv('SWEEP_LOCK_NAME', 'settlement-sweep')
    SWEEP_LOCK_TTL_SECONDS = int(os.getenv('SWEEP_LOCK_TTL_SECONDS', 300))

    # Retry policy for transient store failures (linear backoff)
    SETTLEMENT_RETRY_ATTEMPTS = int(os.getenv('SETTLEMENT_RETRY_ATTEMPTS', 3))
    SETTLEMENT_RETRY_BACKOFF_SECONDS = float(os.getenv('SETTLEMENT_RETRY_BACKOFF_SECONDS', 0.5))

    @classmethod
    def get_confirmation_window(cls) -> timedelta:
        """Voting window length, honouring the demo override"""
        if cls.DEMO_MODE:
            return timedelta(hours=cls.DEMO_CONFIRMATION_WINDOW_HOURS)
        return timedelta(hours=cls.CONFIRMATION_WINDOW_HOURS)

    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_IDS:
            # Multi-guild support: comma-separated IDs
            try:
                return [int(guild_id.strip()) for guild_id in cls.DISCORD_GUILD_IDS.split(',') if guild_id.strip()]
            except ValueError:
                raise ValueError("DISCORD_GUILD_IDS must be comma-separated integers")
        elif cls.DISCORD_GUILD_ID:
            # Single guild support
            return [cls.DISCORD_GUILD_ID]
        else:
            # Global sync
            return []

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if not cls.OWNER_DISCORD_ID:
            raise ValueError("OWNER_DISCORD_ID is required")
        if cls.REPORT_THRESHOLD < 1 or cls.REPORT_THRESHOLD > cls.QUORUM_SIZE:
            raise ValueError(f"REPORT_THRESHOLD must be between 1 and {cls.QUORUM_SIZE}")
        if cls.get_confirmation_window() <= timedelta(0):
            raise ValueError("Confirmation window must be positive")
        if cls.SETTLEMENT_RETRY_ATTEMPTS < 1:
            raise ValueError("SETTLEMENT_RETRY_ATTEMPTS must be at least 1")
