# Main entry point: `jailkeeper` console script and `python -m jailkeeper`.
#
# Runs one provisioning pass and exits with its code:
#   0  fail2ban is running and answering ping
#   1  fatal setup or validation error (service left untouched)
#   2  every activation stage failed (see the diagnostics report)

import argparse
import sys
from pathlib import Path

from . import __version__
from .core.settings import DEFAULT_ENV_FILE, Settings
from .provision.installer import EXIT_FATAL, Installer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jailkeeper",
        description="Install, configure and start fail2ban for sshd (Debian)",
        epilog="Exit codes: 0 healthy, 1 fatal setup error, 2 activation failed",
    )

    parser.add_argument(
        "--skip-install",
        action="store_true",
        help="Do not run apt-get; assume fail2ban is already installed",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help=f"Settings file with JAILKEEPER_* overrides (default: {DEFAULT_ENV_FILE})",
    )

    parser.add_argument(
        "--no-echo",
        action="store_true",
        help="Write to the install log only, not to stderr",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"jailkeeper {__version__}",
    )
    return parser


def main(argv=None):
    """Main entry point for jailkeeper."""
    args = build_parser().parse_args(argv)

    overrides = {"echo": not args.no_echo}
    if args.skip_install:
        overrides["skip_install"] = True
    settings = Settings.load(env_file=args.env_file, **overrides)

    try:
        code = Installer(settings).run()
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        code = EXIT_FATAL
    sys.exit(code)


if __name__ == "__main__":
    main()
