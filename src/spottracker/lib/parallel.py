"""Module parallel of spottracker.lib.

Defines a minimal worker pool that processes items given by index.
Workers draw indices from a shared counter, so that each item is
handled by exactly one thread.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from concurrent.futures import ThreadPoolExecutor
import itertools
import logging
import multiprocessing
import os
import re
import threading

logger = logging.getLogger(__name__)


def available_cpu_count():
    """Return the number of CPUs that this process may use."""
    # cpuset may restrict the number of *available* processors
    try:
        with open('/proc/self/status', encoding='utf-8') as status:
            match = re.search(r'(?m)^Cpus_allowed:\s*(.*)$', status.read())
    except OSError:
        match = None
    if match:
        n_cpus = bin(int(match.group(1).replace(',', ''), 16)).count('1')
        if n_cpus > 0:
            return n_cpus
    try:
        return multiprocessing.cpu_count()
    except NotImplementedError:
        pass
    return os.cpu_count() or 1


def n_search_workers(n_items):
    """Return the number of threads for analyzing `n_items` spots.

    Use only half of the CPUs on machines with four or more, as
    hyperthreading does not help much for this kind of workload.
    """
    n_cpus = available_cpu_count()
    if n_cpus >= 4:
        n_cpus //= 2
    return max(1, min(n_cpus, n_items))


def n_measure_workers(n_items):
    """Return the number of threads for measuring `n_items` slices."""
    return max(1, min(available_cpu_count(), n_items))


def run_parallel(func, n_items, n_workers, cancel_event=None):
    """Call func(index) for all indices in range(n_items).

    Parameters
    ----------
    func : callable
        Called with a single integer argument. It must only
        modify data that belongs to the item with this index.
    n_items : int
        How many items should be processed.
    n_workers : int
        How many threads should process items. No threads
        are started if this is one or less.
    cancel_event : threading.Event, optional
        When set, workers stop drawing new items. Items
        already being processed are completed. Default
        is None.

    Returns
    -------
    None.

    Raises
    ------
    Exception
        Any exception raised by `func` in one of the workers
        is re-raised once all workers are done.
    """
    counter = itertools.count()
    lock = threading.Lock()

    def _drain():
        while cancel_event is None or not cancel_event.is_set():
            with lock:
                index = next(counter)
            if index >= n_items:
                return
            func(index)

    if n_workers <= 1 or n_items <= 1:
        _drain()
        return
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = [executor.submit(_drain) for _ in range(n_workers)]
    for future in futures:
        future.result()
