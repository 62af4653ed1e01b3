#!/usr/bin/python3
"""
xidletool.py - print the X11 user idle time, optionally waiting for a target

The "idle time" is the number of milliseconds since input was received
on any input device, as reported by the X server's MIT-SCREEN-SAVER
extension.  Three modes are available:

  1. Print once (-s): query the idle time a single time, print it and
     exit.  No sleep happens before the query.

  2. Target (-t MS): poll every -i milliseconds until the user has been
     idle for at least MS milliseconds, then print a final
     "Reached idle target" line and exit 0.  Useful for shell scripts
     that want to block until the session goes idle.

  3. Default: poll forever, printing each sample.

With -v each sample line is prefixed with a UNIX timestamp.  With -q
nothing is printed while polling and the final line is suppressed too.
Note that -s and -t are mutually exclusive, only the last one matters.

Runtime dependencies:
    python3-xlib        (python-xlib)   - X11 protocol, screensaver + DPMS

DPMS workaround
---------------
Some X servers subtract the time spent in the current DPMS state from
the screensaver idle time, so once the monitor enters standby the idle
counter appears to restart.  When DPMS is enabled and the monitor is
not On, the configured timeouts leading up to the current state are
added back, but only if the reported idle time is smaller than that
sum.  See https://bugs.freedesktop.org/show_bug.cgi?id=6439.
"""

import logging
import os
import signal
import sys
import threading
import time
from argparse import ArgumentParser, ArgumentTypeError, RawDescriptionHelpFormatter
from dataclasses import dataclass

try:
    from Xlib import display as xdisplay
    from Xlib import error as xerror
    from Xlib.ext import dpms, screensaver
except ImportError:
    print("Please install python3-xlib (python-xlib)", file=sys.stderr)
    raise

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_INTERVAL_MS = 1000

# -s shares the -t destination so the last of the two wins.
PRINT_ONCE = -1

LOG = logging.getLogger("xidletool")

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class IdleToolError(Exception):
    """Base class for fatal errors; main() maps these to exit status 1."""


class ArgumentError(IdleToolError):
    pass


class DisplayConnectionError(IdleToolError):
    pass


class ExtensionUnavailable(IdleToolError):
    pass


class QueryFailure(IdleToolError):
    pass


# ---------------------------------------------------------------------------
# DPMS compensation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DpmsStatus:
    """
    Snapshot of the server's DPMS state.

    Timeouts are in seconds, exactly as DPMSGetTimeouts reports them.
    """

    enabled: bool
    power_level: int
    standby_timeout: int = 0
    suspend_timeout: int = 0
    off_timeout: int = 0


def dpms_correction_ms(status: DpmsStatus | None) -> int:
    """
    Return the milliseconds the server hides from the idle counter in the
    current DPMS state, or 0 if DPMS is unsupported, disabled or On.
    """
    if status is None or not status.enabled:
        return 0

    level = status.power_level
    if level == dpms.DPMSModeStandby:
        seconds = status.standby_timeout
    elif level == dpms.DPMSModeSuspend:
        seconds = status.standby_timeout + status.suspend_timeout
    elif level == dpms.DPMSModeOff:
        seconds = (
            status.standby_timeout + status.suspend_timeout + status.off_timeout
        )
    else:
        seconds = 0
    return seconds * 1000


def compensate_for_dpms(idle_ms: int, status: DpmsStatus | None) -> int:
    """
    Add the hidden DPMS time back to a raw idle sample.

    The correction is only applied when the raw sample is smaller than
    it; a larger sample means the server did not subtract anything.  The
    result is never smaller than idle_ms.
    """
    correction = dpms_correction_ms(status)
    if idle_ms < correction:
        return idle_ms + correction
    return idle_ms


# ---------------------------------------------------------------------------
# Display access
# ---------------------------------------------------------------------------


class IdleSource:
    """
    Owns the X display connection used for idle queries.

    Use as a context manager; the connection is closed on exit whatever
    the reason (normal return, fatal error, SIGTERM, Ctrl-C).
    """

    def __init__(self, display_name: str | None = None):
        self.display_name = display_name
        try:
            self._display = xdisplay.Display(display_name)
        except xerror.DisplayError as exc:
            raise DisplayConnectionError(f"couldn't open display: {exc}") from exc
        self._root = self._display.screen().root
        LOG.debug(
            "Opened display %s", self._display.get_display_name() or display_name
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        if self._display is None:
            return
        try:
            self._display.close()
        except xerror.ConnectionClosedError:
            pass
        self._display = None
        LOG.debug("Closed display")

    def raw_idle_ms(self) -> int:
        """Query MIT-SCREEN-SAVER for the uncorrected idle time."""
        if not self._display.has_extension(screensaver.extname):
            raise ExtensionUnavailable("screen saver extension not supported")
        try:
            info = self._root.screensaver_query_info()
        except (xerror.XError, xerror.ConnectionClosedError) as exc:
            raise QueryFailure(f"couldn't query screen saver info: {exc}") from exc
        return int(info.idle)

    def dpms_status(self) -> DpmsStatus | None:
        """
        Return the current DPMS state, or None if it cannot be determined.

        Failures here are not fatal; the caller just skips the correction.
        """
        if not self._display.has_extension(dpms.extname):
            LOG.debug("DPMS extension not present")
            return None
        try:
            if not self._display.dpms_capable().capable:
                LOG.debug("Server is not DPMS capable")
                return None
            timeouts = self._display.dpms_get_timeouts()
            info = self._display.dpms_info()
        except (xerror.XError, xerror.ConnectionClosedError) as exc:
            LOG.debug("DPMS query failed: %s", exc)
            return None

        return DpmsStatus(
            enabled=bool(info.state),
            power_level=info.power_level,
            standby_timeout=timeouts.standby_timeout,
            suspend_timeout=timeouts.suspend_timeout,
            off_timeout=timeouts.off_timeout,
        )

    def idle_ms(self) -> int:
        raw = self.raw_idle_ms()
        status = self.dpms_status()
        current = compensate_for_dpms(raw, status)
        LOG.debug("Idle sample: raw=%dms corrected=%dms dpms=%s", raw, current, status)
        return current


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    target_ms: int = 0
    interval_ms: int = DEFAULT_INTERVAL_MS
    print_once: bool = False
    verbose: bool = False
    quiet: bool = False

    @classmethod
    def from_args(cls, args) -> "RunConfig":
        print_once = args.target == PRINT_ONCE
        return cls(
            target_ms=0 if print_once else args.target,
            interval_ms=args.interval,
            print_once=print_once,
            verbose=args.verbose,
            quiet=args.quiet,
        )


class Cancellation:
    """
    Stop request raised by a signal handler and observed by poll_idle().

    The handler only sets an event; the display is never touched from
    signal context.  wait() doubles as the poll interval sleep so a stop
    request ends it early.
    """

    def __init__(self):
        self._event = threading.Event()
        self.signum = None

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, signum=None, _frame=None) -> None:
        self.signum = signum
        self._event.set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)

    def install(self, signum: int = signal.SIGTERM) -> None:
        signal.signal(signum, self.request)


def poll_idle(
    source,
    config: RunConfig,
    cancel: Cancellation | None = None,
    out=None,
    sleep=None,
    clock=None,
) -> int | None:
    """
    Sample the idle time until the target is reached.

    source only needs an idle_ms() method.  Returns the last sample, or
    None if a stop was requested before the loop finished.
    """
    if cancel is None:
        cancel = Cancellation()
    if out is None:
        out = sys.stdout
    if sleep is None:
        sleep = cancel.wait
    if clock is None:
        clock = time.time

    def emit(line: str) -> None:
        print(line, file=out, flush=True)

    target = config.target_ms
    current = 0
    while not target or current < target:
        if not config.print_once:
            sleep(config.interval_ms / 1000)
        if cancel.requested:
            LOG.info("Stop requested (signal %s), exiting", cancel.signum)
            return None

        current = source.idle_ms()

        if config.print_once:
            emit(str(current))
            return current
        if not config.quiet:
            if config.verbose:
                emit(f"{int(clock())} - {current}")
            else:
                emit(str(current))

    if not config.quiet:
        emit(f"Reached idle target: {current} | timestamp: {int(clock())}")
    return current


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class _ArgumentParser(ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        raise ArgumentError(message)


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ArgumentTypeError(f"invalid integer value: {value!r}") from None
    if number < 0:
        raise ArgumentTypeError(f"must not be negative: {value}")
    return number


def _positive_int(value: str) -> int:
    number = _non_negative_int(value)
    if number == 0:
        raise ArgumentTypeError(f"must be greater than 0: {value}")
    return number


def parse_args(argv=None):
    """
    Parse arguments, with environment variables as defaults.

        XIDLETOOL_INTERVAL=500
        XIDLETOOL_DEBUG=1

    Raises ArgumentError on an unknown option or a bad value.
    """

    def _bool_env(key: str) -> bool:
        v = os.getenv(key, "").strip().lower()
        return v in ("1", "true", "yes")

    parser = _ArgumentParser(
        prog="xidletool",
        description=__doc__,
        formatter_class=RawDescriptionHelpFormatter,
        epilog=(
            "By default, xidletool runs indefinitely with an interval of "
            f"{DEFAULT_INTERVAL_MS} milliseconds.\n"
            "The user's idle time in milliseconds is printed on stdout."
        ),
    )
    parser.add_argument(
        "-s",
        dest="target",
        action="store_const",
        const=PRINT_ONCE,
        help="Print the current idle time and exit",
    )
    parser.add_argument(
        "-t",
        dest="target",
        type=_non_negative_int,
        metavar="MS",
        help="Run until the system has been idle for MS milliseconds (0: never)",
    )
    parser.add_argument(
        "-i",
        dest="interval",
        type=_positive_int,
        default=os.getenv("XIDLETOOL_INTERVAL", str(DEFAULT_INTERVAL_MS)),
        metavar="MS",
        help=(
            f"Check idle time every MS milliseconds (default: {DEFAULT_INTERVAL_MS}) "
            "[env: XIDLETOOL_INTERVAL]"
        ),
    )
    parser.add_argument(
        "-v",
        dest="verbose",
        action="store_true",
        help="Prefix each sample with a UNIX timestamp",
    )
    parser.add_argument(
        "-q",
        dest="quiet",
        action="store_true",
        help="Print nothing while polling and when the target is reached",
    )
    parser.add_argument(
        "-d",
        "--display",
        default=None,
        metavar="NAME",
        help="X display to query (default: $DISPLAY)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_bool_env("XIDLETOOL_DEBUG"),
        help="Enable debug logging on stderr [env: XIDLETOOL_DEBUG]",
    )
    args = parser.parse_args(argv)
    if args.target is None:
        args.target = 0
    return args


def main(argv=None):
    try:
        args = parse_args(argv)
    except ArgumentError as exc:
        print(f"xidletool: error: {exc}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    config = RunConfig.from_args(args)
    LOG.debug("Starting xidletool (%s, display=%s)", config, args.display or "default")

    cancel = Cancellation()
    cancel.install(signal.SIGTERM)

    try:
        with IdleSource(args.display) as source:
            poll_idle(source, config, cancel)
    except KeyboardInterrupt:
        LOG.info("Interrupted, exiting")
    except IdleToolError as exc:
        LOG.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
