"""
Tests for work file allocation.

Unique names must hold under concurrent allocation from many request
threads.
"""

import os
import threading

from hypothesis import given, settings, strategies as st

from vantage_point.workfile import WorkFileAllocator


class TestWorkFileAllocator:
    """Test work file naming and creation."""

    def test_path_embeds_port_and_counter(self, allocator, tmp_path):
        assert allocator.path_for(7) == os.path.join(str(tmp_path), "targs_54321_7.txt")

    def test_path_without_port(self, tmp_path):
        """Before the listener is bound the port part is empty."""
        allocator = WorkFileAllocator(str(tmp_path), lambda: None)

        assert allocator.path_for(0) == os.path.join(str(tmp_path), "targs__0.txt")

    def test_allocate_lines_writes_one_line_per_item(self, allocator):
        fn = allocator.allocate_lines(["1.2.3.4", "5.6.7.8"])

        with open(fn) as f:
            assert f.read() == "1.2.3.4\n5.6.7.8\n"

    def test_counter_never_repeats(self, allocator):
        first = allocator.allocate_lines(["1.2.3.4"])
        second = allocator.allocate_lines(["1.2.3.4"])

        assert first != second
        assert first.endswith("_0.txt")
        assert second.endswith("_1.txt")

    def test_reserve_does_not_create_file(self, allocator):
        fn = allocator.reserve("spoof_{port}_{uid}_rrspoofping.out")

        assert fn.endswith("spoof_54321_0_rrspoofping.out")
        assert not os.path.exists(fn)

    def test_concurrent_allocation_is_unique(self, allocator):
        """Files created from many threads at once never share a name."""
        paths = []
        paths_lock = threading.Lock()

        def worker():
            for _ in range(25):
                fn = allocator.allocate_lines(["10.0.0.1"])
                with paths_lock:
                    paths.append(fn)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(paths) == 200
        assert len(set(paths)) == 200


@settings(max_examples=50, deadline=None)
@given(
    thread_count=st.integers(min_value=1, max_value=8),
    per_thread=st.integers(min_value=1, max_value=30),
)
def test_property_uids_are_dense_and_unique(thread_count, per_thread):
    """
    For any number of concurrent callers, the issued ids are exactly
    0..N-1 with no duplicates.
    """
    allocator = WorkFileAllocator("/nonexistent", lambda: 1)
    uids = []
    uids_lock = threading.Lock()

    def worker():
        for _ in range(per_thread):
            uid = allocator.next_uid()
            with uids_lock:
                uids.append(uid)

    threads = [threading.Thread(target=worker) for _ in range(thread_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(uids) == list(range(thread_count * per_thread))
