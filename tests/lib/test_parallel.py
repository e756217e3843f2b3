"""Tests for module parallel of spottracker.lib."""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from collections import Counter
import threading
from unittest.mock import patch

import pytest
from pytest_cases import parametrize

from spottracker.lib import parallel
from spottracker.lib.parallel import available_cpu_count
from spottracker.lib.parallel import n_measure_workers
from spottracker.lib.parallel import n_search_workers
from spottracker.lib.parallel import run_parallel


class _CustomError(Exception):
    """An exception raised by a worker."""


class TestRunParallel:
    """Tests for the run_parallel function."""

    _n_workers = {'serial': 1, 'two': 2, 'many': 8}

    @parametrize(n_workers=_n_workers.values(), ids=_n_workers)
    def test_each_item_once(self, n_workers):
        """Check that every index is processed exactly once."""
        processed = Counter()
        lock = threading.Lock()

        def _process(index):
            with lock:
                processed[index] += 1

        run_parallel(_process, 50, n_workers)
        assert processed == Counter(range(50))

    def test_no_items(self):
        """Check that nothing happens without items."""
        processed = []
        run_parallel(processed.append, 0, 4)
        assert not processed

    def test_cancelled(self):
        """Check that no item is processed after cancellation."""
        processed = []
        cancel = threading.Event()
        cancel.set()
        run_parallel(processed.append, 10, 4, cancel)
        assert not processed

    def test_cancel_while_running(self):
        """Check that workers stop drawing items once cancelled."""
        processed = []
        cancel = threading.Event()

        def _process(index):
            processed.append(index)
            if index == 3:
                cancel.set()

        run_parallel(_process, 100, 1, cancel)
        assert processed == [0, 1, 2, 3]

    @parametrize(n_workers=_n_workers.values(), ids=_n_workers)
    def test_raises(self, n_workers):
        """Check that exceptions in workers are propagated."""
        def _process(index):
            if index == 5:
                raise _CustomError

        with pytest.raises(_CustomError):
            run_parallel(_process, 10, n_workers)


class TestWorkerCount:
    """Tests for the number of worker threads."""

    def test_available_cpus(self):
        """Check that at least one CPU is available."""
        assert available_cpu_count() >= 1

    _search = {  # n_cpus, n_items, expect
        'half of many cpus': (8, 100, 4),
        'few cpus': (2, 100, 2),
        'few items': (8, 3, 3),
        'no items': (8, 0, 1),
        }

    @parametrize('n_cpus,n_items,expect', _search.values(), ids=_search)
    def test_search_workers(self, n_cpus, n_items, expect):
        """Check the number of threads for searching spots."""
        with patch.object(parallel, 'available_cpu_count',
                          return_value=n_cpus):
            assert n_search_workers(n_items) == expect

    def test_measure_workers(self):
        """Check that measuring uses all CPUs."""
        with patch.object(parallel, 'available_cpu_count', return_value=8):
            assert n_measure_workers(100) == 8
            assert n_measure_workers(5) == 5
