#!/usr/bin/env python3
"""
Escalation heartbeat - periodically resolves commands that waited too long for approval.
"""

import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from gateway.core.config import is_escalation_enabled
from gateway.core.db import init_db
from gateway.core.escalation import register_escalation_task
from gateway.core.heartbeat import start, stop


def main():
    """Main entry point for heartbeat script."""
    try:
        if not is_escalation_enabled():
            print("❌ Escalation heartbeat requires ESCALATION_ENABLED=true")
            return 1

        init_db()
        interval = register_escalation_task()
        print(f"🏃 Escalation sweep scheduled every {interval} seconds")

        start()

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        stop()
    except (ValueError, RuntimeError) as e:
        print(f"💥 Critical error: {e}")
        stop()
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
