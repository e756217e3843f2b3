"""Module log_utils of spottracker.lib.

Collects functions and classes useful for handling logging features
of a tracking run: temporary logger levels, timing of the steps of
a run, and the handlers and formatter used when a run is logged to
the console or to a file.
"""

__authors__ = (
    'Florian Kraushofer (@fkraushofer)',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'


from contextlib import contextmanager
from contextlib import nullcontext
import logging
from logging import DEBUG
from logging import INFO
import time


@contextmanager
def at_level(logger, level):
    """Temporarily set the level of `logger` to `level`."""
    # Fetch the current level, but don't use getEffectiveLevel
    # that walks up the parent tree to fetch up to the root
    previous_level = logger.level
    logger.setLevel(level)
    try:
        yield
    finally:
        logger.setLevel(previous_level)


def debug_or_lower(logger, effective=True):
    """Return whether `logger` has a level less than DEBUG."""
    level = logger.getEffectiveLevel() if effective else logger.level
    return level <= DEBUG


def info_enabled_if(logger, condition):
    """Return a context in which `logger` emits INFO if `condition`.

    The detailed trace of a single spot is logged at INFO level.
    When it is requested, `logger` is temporarily lowered to INFO
    if it would not emit such messages otherwise.

    Parameters
    ----------
    logger : logging.Logger
        Typically the package logger.
    condition : bool
        Whether INFO messages should be emitted.

    Returns
    -------
    context : contextlib.AbstractContextManager
    """
    if condition and not logger.isEnabledFor(INFO):
        return at_level(logger, INFO)
    return nullcontext()


@contextmanager
def log_elapsed(logger, step):
    """Log at DEBUG level the time taken by `step`, if needed."""
    if not debug_or_lower(logger):
        yield
        return
    start = time.perf_counter()
    yield
    logger.debug(f'{step}: {time.perf_counter() - start:.2f} s')


def prepare_tracker_logger(logger, file_name=None, with_console=True):
    """Add formatted handlers to `logger` for a tracking run.

    Parameters
    ----------
    logger : logging.Logger
        The logger to be prepared. Typically the 'spottracker'
        package logger.
    file_name : str or Path, optional
        Path to a log file. It is overwritten if it exists.
        Default is None, i.e., do not log to file.
    with_console : bool, optional
        Whether messages should also be printed to stderr.
        Default is True.

    Returns
    -------
    handlers : list
        The handlers that were added. Remove them with
        remove_handlers at the end of the run.
    """
    formatter = TrackerLogFormatter()
    handlers = []
    if file_name is not None:
        handlers.append(logging.FileHandler(file_name, mode='w',
                                            encoding='utf-8'))
    if with_console:
        handlers.append(logging.StreamHandler())  # Uses sys.stderr
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return handlers


def remove_handlers(logger, handlers):
    """Detach `handlers` from `logger`, then flush and close them."""
    for handler in handlers:
        logger.removeHandler(handler)
        handler.acquire()
        try:
            handler.flush()
            handler.close()
        finally:
            handler.release()


class TrackerLogFormatter(logging.Formatter):
    """Logging Formatter for level-dependent message formatting."""

    formats = {
        logging.DEBUG: 'dbg: %(msg)s',
        logging.INFO: '%(msg)s',
        logging.WARNING: '# WARNING: %(msg)s',
        logging.ERROR: (
            '### ERROR ### in %(module)s:%(funcName)s:%(lineno)s\n'
            '# %(msg)s\n#############'
            ),
        logging.CRITICAL: (
            '### CRITICAL ### in %(module)s:%(funcName)s:%(lineno)s\n'
            '# %(msg)s\n################'
            ),
        'DEFAULT': '%(msg)s',
        }

    def format(self, record):
        """Use the DEBUG log format for everything at DEBUG level or lower."""
        level = record.levelno
        log_fmt = (self.formats[DEBUG] if level < DEBUG
                   else self.formats.get(level, self.formats['DEFAULT']))
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)
