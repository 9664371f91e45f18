"""
WP-Agent server entry point:
    python -m wpagent          # configuration from environment
    python -m wpagent --dev    # development profile
"""

import sys

from wpagent.server.app import WPAgentServer


def main() -> None:
    if "--dev" in sys.argv:
        server = WPAgentServer.development()
    elif "--production" in sys.argv:
        server = WPAgentServer.production()
    else:
        server = WPAgentServer()
    server.run()


if __name__ == "__main__":
    main()
