#!/usr/bin/env python3
"""
Name: memtrack
Description: allocation hooks for block storage, with an optional leak tracker
Author: Niklas Rosenstein
License: mit
"""

import sys
import inspect
import os


class Allocator:
    """Hands out raw block storage. The default used by every buffer."""

    def allocate(self, size):
        return bytearray(size)

    def deallocate(self, storage):
        pass


class AllocationTracker(Allocator):
    """
    Debug allocator that remembers where each live block of storage was
    requested. Passing one of these to a SegmentedBuffer (or to scan_stream)
    lets report() list everything that was never given back.

    An optional byte `limit` makes allocations beyond it fail with
    MemoryError, to exercise out-of-memory paths.
    """

    def __init__(self, limit=None, stream=None):
        self.limit = limit
        self.stream = stream
        self.live = {}
        self.allocations = 0
        self.deallocations = 0
        self.in_use = 0
        self.peak = 0

    def allocate(self, size):
        if self.limit is not None and self.in_use + size > self.limit:
            filename, line = self._caller()
            print(f"{filename}:{line} Failed to allocate {size} bytes.",
                  file=self.stream or sys.stderr)
            raise MemoryError(f"allocation of {size} bytes exceeds limit of {self.limit}")

        storage = bytearray(size)
        self.live[id(storage)] = (storage, size, self._caller())
        self.allocations += 1
        self.in_use += size
        self.peak = max(self.peak, self.in_use)
        return storage

    def deallocate(self, storage):
        entry = self.live.pop(id(storage), None)
        if entry is None or entry[0] is not storage:
            filename, line = self._caller()
            print(f"{filename}:{line} Attempt to deallocate memory block not "
                  "allocated by this tracker.", file=self.stream or sys.stderr)
            return
        self.deallocations += 1
        self.in_use -= entry[1]

    def report(self, fp=None):
        """Print one line per live allocation, newest first."""
        fp = fp or sys.stderr
        for storage, size, (filename, line) in reversed(list(self.live.values())):
            print(f"{filename}:{line} ({size} bytes)", file=fp)

    @staticmethod
    def _caller():
        # Skip frames inside this module and the buffer code itself.
        frame = inspect.currentframe()
        here = os.path.abspath(__file__)
        try:
            while frame is not None:
                filename = frame.f_code.co_filename
                if os.path.abspath(filename) != here and \
                        os.path.basename(filename) != 'charbuffer.py':
                    return os.path.basename(filename), frame.f_lineno
                frame = frame.f_back
            return '?', 0
        finally:
            del frame
