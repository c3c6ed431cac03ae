"""
Gateway configuration - environment driven, loaded once at import.
Values that tests need to change at runtime are read through accessor functions.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration (read per connection through get_db_path())
DB_PATH = os.getenv("DB_PATH", "./data/gateway.db")

# Debug flag is a function to be dynamic
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Admission policy
DEFAULT_NO_MATCH_ACTION = os.getenv("DEFAULT_NO_MATCH_ACTION", "AUTO_REJECT")  # AUTO_REJECT|REQUIRE_APPROVAL
DEFAULT_COMMAND_COST = int(os.getenv("DEFAULT_COMMAND_COST", "1"))
MAX_COMMAND_LENGTH = int(os.getenv("MAX_COMMAND_LENGTH", "2000"))

# Escalation sweep (heartbeat) configuration - default disabled
ESCALATION_ENABLED = os.getenv("ESCALATION_ENABLED", "false").lower() == "true"
ESCALATION_INTERVAL_SEC = int(os.getenv("ESCALATION_INTERVAL_SEC", "60"))

# Audit queries
AUDIT_LOG_DEFAULT_LIMIT = int(os.getenv("AUDIT_LOG_DEFAULT_LIMIT", "100"))

# Version string
VERSION = "1.0.0"

NO_MATCH_ACTIONS = ["AUTO_REJECT", "REQUIRE_APPROVAL"]


def get_db_path() -> str:
    """Current database path. Honours DB_PATH changes made after import."""
    return os.getenv("DB_PATH", DB_PATH)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def get_default_no_match_action() -> str:
    """Action applied when no rule matches a command."""
    return DEFAULT_NO_MATCH_ACTION


def get_default_command_cost() -> int:
    """Cost charged when the matched rule has none, or nothing matched."""
    return DEFAULT_COMMAND_COST


def is_escalation_enabled():
    """Check if the escalation heartbeat is enabled."""
    return ESCALATION_ENABLED


def get_escalation_interval():
    """Get escalation sweep interval in seconds."""
    return ESCALATION_INTERVAL_SEC


def validate_escalation_config():
    """Validate escalation and admission configuration and return any issues."""
    issues = []

    if ESCALATION_INTERVAL_SEC < 1:
        issues.append("ESCALATION_INTERVAL_SEC must be >= 1")

    if DEFAULT_NO_MATCH_ACTION not in NO_MATCH_ACTIONS:
        issues.append(f"Invalid DEFAULT_NO_MATCH_ACTION: {DEFAULT_NO_MATCH_ACTION}")

    if DEFAULT_COMMAND_COST < 0:
        issues.append("DEFAULT_COMMAND_COST must be >= 0")

    return issues
