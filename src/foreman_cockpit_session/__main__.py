"""
Foreman Cockpit Session - Entry point

Spawned by cockpit-ws for each web console session. Speaks the control
protocol on stdin/stdout, then relays the session through the host's
remote execution proxy.

Usage:
    foreman-cockpit-session HOST
    foreman-cockpit-session --settings /path/to/settings.yml HOST

Exit status is 0 after a clean relay and 1 on any failure.
"""

import argparse
import logging
import sys

from . import __version__
from .config import Settings, get_settings_path
from .control import ControlChannel
from .errors import ConfigError
from .logs import setup_logging
from .session import EXIT_FAILURE, Session

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the session bridge."""
    parser = argparse.ArgumentParser(
        description="Web console session bridge for Foreman remote execution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings are read from FOREMAN_COCKPIT_SETTINGS or
/etc/foreman-cockpit/settings.yml unless --settings is given.
        """,
    )
    parser.add_argument(
        "host",
        help="Name of the host to open a web console session for",
    )
    parser.add_argument(
        "--settings",
        metavar="FILE",
        help="Path to the YAML settings file",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args(argv)

    try:
        settings = Settings.load(get_settings_path(args.settings))
    except ConfigError as e:
        setup_logging()
        logger.error(str(e))
        return EXIT_FAILURE

    setup_logging(settings.log_level)
    logger.debug(f"Starting session for {args.host}")

    channel = ControlChannel(sys.stdin.fileno(), sys.stdout.fileno())
    return Session(settings, args.host, channel).run()


if __name__ == "__main__":
    sys.exit(main())
