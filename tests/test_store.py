"""
Test suite for MemoryStore and Transaction

Tests:
    - Point and range reads, limits and reverse scans
    - Read-your-writes, clears and clear-then-set
    - Key selector resolution
    - Conflict detection (point, range, read-only, snapshot)
    - transact() retry loop and error propagation
    - Recovery from the commit WAL
"""

import unittest
import tempfile
import os
import shutil
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from levelagg.errors import ConfigError, ConflictError
from levelagg.store import KEYSPACE_BEGIN, KEYSPACE_END, KeySelector, MemoryStore


def _fill(store, items):
    def _set_all(tn):
        for key, value in items:
            tn.set(key, value)
    store.transact(_set_all)


class TestTransactionReads(unittest.TestCase):
    """Test reads through a transaction"""

    def setUp(self):
        self.store = MemoryStore()
        _fill(self.store, [(b"a", 1), (b"c", 3), (b"e", 5), (b"g", 7)])

    def test_get(self):
        self.assertEqual(self.store.transact(lambda tn: tn.get(b"c")), 3)
        self.assertIsNone(self.store.transact(lambda tn: tn.get(b"b")))

    def test_get_range(self):
        rows = self.store.transact(lambda tn: tn.get_range(b"b", b"f"))
        self.assertEqual(rows, [(b"c", 3), (b"e", 5)])

    def test_get_range_limit_and_reverse(self):
        rows = self.store.transact(
            lambda tn: tn.get_range(KEYSPACE_BEGIN, KEYSPACE_END, limit=2, reverse=True))
        self.assertEqual(rows, [(b"g", 7), (b"e", 5)])

    def test_empty_and_inverted_ranges(self):
        self.assertEqual(self.store.transact(lambda tn: tn.get_range(b"h", b"z")), [])
        self.assertEqual(self.store.transact(lambda tn: tn.get_range(b"f", b"b")), [])

    def test_read_your_writes(self):
        """Test buffered writes are merged into reads before commit"""
        def _work(tn):
            tn.set(b"b", 2)
            tn.set(b"c", 30)
            return tn.get_range(b"a", b"d"), tn.get(b"c")

        rows, value = self.store.transact(_work)

        self.assertEqual(rows, [(b"a", 1), (b"b", 2), (b"c", 30)])
        self.assertEqual(value, 30)

    def test_clear_range_then_set(self):
        """Test clears hide committed keys and later sets survive"""
        def _work(tn):
            tn.clear_range(b"b", b"f")
            tn.set(b"d", 4)
            return tn.get_range(KEYSPACE_BEGIN, KEYSPACE_END)

        inside = self.store.transact(_work)
        after = self.store.transact(lambda tn: tn.get_range(KEYSPACE_BEGIN, KEYSPACE_END))

        expected = [(b"a", 1), (b"d", 4), (b"g", 7)]
        self.assertEqual(inside, expected)
        self.assertEqual(after, expected)

    def test_set_then_clear(self):
        def _work(tn):
            tn.set(b"b", 2)
            tn.clear(b"b")
            tn.clear(b"a")

        self.store.transact(_work)
        rows = self.store.transact(lambda tn: tn.get_range(KEYSPACE_BEGIN, KEYSPACE_END))
        self.assertEqual([k for k, _ in rows], [b"c", b"e", b"g"])

    def test_none_value_rejected(self):
        with self.assertRaises(ValueError):
            self.store.transact(lambda tn: tn.set(b"x", None))


class TestKeySelectors(unittest.TestCase):
    """Test selector resolution as range bounds"""

    def setUp(self):
        self.store = MemoryStore()
        _fill(self.store, [(b"a", 1), (b"c", 3), (b"e", 5)])

    def _range(self, begin, end, **kwargs):
        return [k for k, _ in self.store.transact(lambda tn: tn.get_range(begin, end, **kwargs))]

    def test_previous_key_probe(self):
        """Test last_less_than .. first_greater_or_equal yields the previous key"""
        keys = self._range(KeySelector.last_less_than(b"c"),
                           KeySelector.first_greater_or_equal(b"c"), limit=1)
        self.assertEqual(keys, [b"a"])

    def test_first_greater_than(self):
        self.assertEqual(self._range(KeySelector.first_greater_than(b"c"), KEYSPACE_END), [b"e"])
        self.assertEqual(self._range(KeySelector.first_greater_than(b"b"), KEYSPACE_END), [b"c", b"e"])

    def test_first_greater_or_equal(self):
        self.assertEqual(self._range(KeySelector.first_greater_or_equal(b"c"), KEYSPACE_END),
                         [b"c", b"e"])

    def test_last_less_or_equal(self):
        self.assertEqual(self._range(KeySelector.last_less_or_equal(b"c"), KEYSPACE_END),
                         [b"c", b"e"])
        self.assertEqual(self._range(KeySelector.last_less_or_equal(b"d"), KEYSPACE_END),
                         [b"c", b"e"])

    def test_selector_past_end_clamps(self):
        self.assertEqual(self._range(KeySelector.first_greater_than(b"e"), KEYSPACE_END), [])
        self.assertEqual(self._range(KEYSPACE_BEGIN, KeySelector.last_less_than(b"a")), [])

    def test_selector_validation(self):
        with self.assertRaises(TypeError):
            KeySelector.first_greater_than("c")
        with self.assertRaises(ValueError):
            KeySelector(b"c", False, 2)


class TestConflicts(unittest.TestCase):
    """Test optimistic conflict detection at commit"""

    def setUp(self):
        self.store = MemoryStore()
        _fill(self.store, [(b"k", 1)])

    def _write(self, key, value):
        tn = self.store.begin()
        tn.set(key, value)
        tn.commit()

    def test_point_read_conflict(self):
        t1 = self.store.begin()
        t1.get(b"k")
        self._write(b"k", 2)
        t1.set(b"other", 1)

        with self.assertRaises(ConflictError):
            t1.commit()
        self.assertIsNone(self.store.transact(lambda tn: tn.get(b"other")))

    def test_range_read_conflict(self):
        t1 = self.store.begin()
        t1.get_range(b"a", b"m")
        self._write(b"f", 6)
        t1.set(b"z", 1)

        with self.assertRaises(ConflictError):
            t1.commit()

    def test_disjoint_writes_commit(self):
        t1 = self.store.begin()
        t1.get_range(b"a", b"c")
        self._write(b"x", 6)
        t1.set(b"b", 1)
        t1.commit()

        self.assertEqual(self.store.transact(lambda tn: tn.get(b"b")), 1)

    def test_read_only_transaction_is_validated(self):
        """Test a query whose view changed underneath it cannot succeed"""
        t1 = self.store.begin()
        t1.get(b"k")
        self._write(b"k", 2)

        with self.assertRaises(ConflictError):
            t1.commit()

    def test_snapshot_reads_do_not_conflict(self):
        t1 = self.store.begin()
        t1.snapshot().get(b"k")
        t1.snapshot().get_range(b"a", b"z")
        self._write(b"k", 2)
        t1.set(b"other", 1)
        t1.commit()

    def test_selector_gap_conflicts(self):
        """Test a key landing between a selector and its resolved key conflicts"""
        t1 = self.store.begin()
        t1.get_range(KeySelector.first_greater_than(b"a"), KEYSPACE_END, limit=1)
        self._write(b"b", 2)

        with self.assertRaises(ConflictError):
            t1.commit()

    def test_limited_backward_selector_gap_conflicts(self):
        """Test a key landing between last_less_than's result and its anchor conflicts"""
        t1 = self.store.begin()
        rows = t1.get_range(KeySelector.last_less_than(b"z"),
                            KeySelector.first_greater_or_equal(b"z"), limit=1)
        self.assertEqual(rows, [(b"k", 1)])
        self._write(b"m", 2)

        with self.assertRaises(ConflictError):
            t1.commit()

    def test_explicit_read_conflict_range(self):
        t1 = self.store.begin()
        t1.add_read_conflict_range(b"p", b"q")
        self._write(b"p1", 1)

        with self.assertRaises(ConflictError):
            t1.commit()

    def test_commit_twice_fails(self):
        tn = self.store.begin()
        tn.commit()
        with self.assertRaises(RuntimeError):
            tn.commit()

    def test_history_pruned_when_idle(self):
        self._write(b"a", 1)
        self._write(b"b", 2)
        self.assertEqual(self.store._history, [])


class TestTransact(unittest.TestCase):
    """Test the transact() retry loop"""

    def test_retries_after_conflict(self):
        store = MemoryStore()
        _fill(store, [(b"counter", 0)])
        attempts = []

        def _increment(tn):
            attempts.append(1)
            value = tn.get(b"counter")
            if len(attempts) == 1:
                # Another writer sneaks in before we commit
                other = store.begin()
                other.set(b"counter", 100)
                other.commit()
            tn.set(b"counter", value + 1)
            return value

        result = store.transact(_increment)

        self.assertEqual(len(attempts), 2)
        self.assertEqual(result, 100)
        self.assertEqual(store.transact(lambda tn: tn.get(b"counter")), 101)

    def test_gives_up_after_max_retries(self):
        store = MemoryStore(max_retries=2)
        attempts = []

        def _always_conflicts(tn):
            attempts.append(1)
            tn.get(b"k")
            other = store.begin()
            other.set(b"k", len(attempts))
            other.commit()
            tn.set(b"mine", 1)

        with self.assertLogs("levelagg.store", level="WARNING"):
            with self.assertRaises(ConflictError):
                store.transact(_always_conflicts)

        self.assertEqual(len(attempts), 3)
        self.assertIsNone(store.transact(lambda tn: tn.get(b"mine")))

    def test_other_errors_propagate_without_writes(self):
        store = MemoryStore()
        attempts = []

        def _fails(tn):
            attempts.append(1)
            tn.set(b"partial", 1)
            raise KeyError("boom")

        with self.assertRaises(KeyError):
            store.transact(_fails)

        self.assertEqual(len(attempts), 1)
        self.assertIsNone(store.transact(lambda tn: tn.get(b"partial")))
        self.assertEqual(store._active, {})

    def test_negative_retries_rejected(self):
        with self.assertRaises(ConfigError):
            MemoryStore(max_retries=-1)

    def test_version_advances_on_write_only(self):
        store = MemoryStore()
        store.transact(lambda tn: tn.get(b"x"))
        self.assertEqual(store.version, 0)
        store.transact(lambda tn: tn.set(b"x", 1))
        self.assertEqual(store.version, 1)


class TestRecovery(unittest.TestCase):
    """Test MemoryStore replays its commit WAL"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.wal_path = os.path.join(self.test_dir, "store.wal")

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_reopen_restores_state(self):
        with MemoryStore(wal_path=self.wal_path) as store:
            _fill(store, [(b"a", 1), (b"b", {"sum": 2}), (b"c", 3)])
            store.transact(lambda tn: tn.clear(b"c"))

        with MemoryStore(wal_path=self.wal_path) as reopened:
            rows = reopened.transact(lambda tn: tn.get_range(KEYSPACE_BEGIN, KEYSPACE_END))
            self.assertEqual(rows, [(b"a", 1), (b"b", {"sum": 2})])
            self.assertEqual(reopened.version, 2)
            self.assertEqual(reopened.num_entries(), 2)

    def test_failed_transaction_not_logged(self):
        with MemoryStore(wal_path=self.wal_path, sync_on_write=False) as store:
            _fill(store, [(b"a", 1)])
            with self.assertRaises(ValueError):
                store.transact(lambda tn: (tn.set(b"b", 2), int("x")))

        with MemoryStore(wal_path=self.wal_path) as reopened:
            self.assertIsNone(reopened.transact(lambda tn: tn.get(b"b")))


def run_tests():
    """Run all store tests"""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    for case in (TestTransactionReads, TestKeySelectors, TestConflicts,
                 TestTransact, TestRecovery):
        suite.addTests(loader.loadTestsFromTestCase(case))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return result.wasSuccessful()


if __name__ == '__main__':
    success = run_tests()
    sys.exit(0 if success else 1)
