#!/usr/bin/env python3
"""
Name: charbuffer
Description: append-only byte storage split over a chain of fixed-size blocks
Author: Niklas Rosenstein
License: mit
"""

from memtrack import Allocator

DEFAULT_ALLOCATOR = Allocator()


class AllocationError(MemoryError):
    """A block for the chain could not be allocated."""


class Block:
    """One fixed-capacity node of a SegmentedBuffer chain."""

    __slots__ = ('capacity', 'filled', 'data', 'next')

    def __init__(self, data):
        self.capacity = len(data)
        self.filled = 0
        self.data = data
        self.next = None

    def is_full(self):
        return self.filled >= self.capacity

    def view(self):
        """A memoryview over the filled part of the block."""
        return memoryview(self.data)[:self.filled]

    def __repr__(self):
        return f"<Block {self.filled}/{self.capacity}>"


class SegmentedBuffer:
    """
    An unbounded byte sequence stored in a singly linked chain of blocks.

    Every block of a chain has the capacity the chain was created with.
    Appending only ever touches the tail, so no block except the last one
    is partially filled once an append returns. The whole sequence is never
    copied into one contiguous allocation unless asked for with to_bytes()
    or to_buffer().

    Storage comes from `allocator` (see memtrack), which makes it possible
    to track or limit what the buffer allocates.
    """

    def __init__(self, block_size, allocator=None):
        if block_size <= 0:
            raise AllocationError(f"invalid block size {block_size}")
        self.allocator = allocator if allocator is not None else DEFAULT_ALLOCATOR
        self.block_size = block_size
        self.head = self._new_block()
        # Last block written to; appends continue from here.
        self._cursor = self.head

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.release()

    def __repr__(self):
        if self.head is None:
            return "<SegmentedBuffer released>"
        return (f"<SegmentedBuffer {len(self)} bytes in "
                f"{sum(1 for _ in self.blocks())} x {self.block_size}>")

    def _new_block(self):
        try:
            data = self.allocator.allocate(self.block_size)
        except MemoryError as e:
            raise AllocationError(f"could not allocate a block of {self.block_size} bytes") from e
        return Block(data)

    def blocks(self):
        """Iterate over the blocks of the chain, head first."""
        if self.head is None:
            raise ValueError("operation on a released buffer")
        block = self.head
        while block is not None:
            yield block
            block = block.next

    # --- Appending ---

    def prepare_append(self, start=None):
        """
        Return the first block from `start` on that still has room,
        linking a new block to the tail if the chain is full.
        """
        block = start if start is not None else self._cursor
        if block is None:
            raise ValueError("operation on a released buffer")
        while block.is_full():
            if block.next is None:
                block.next = self._new_block()
            block = block.next
        return block

    def append_byte(self, value, start=None):
        """Append one byte (an int 0-255). Returns the block written to."""
        block = self.prepare_append(start)
        block.data[block.filled] = value
        block.filled += 1
        self._cursor = block
        return block

    def append_bytes(self, data, start=None):
        """
        Append a bytes-like object. The copy is not atomic: if a block
        cannot be allocated, whatever fit before stays in the buffer.
        """
        view = memoryview(data).cast('B')
        total = view.nbytes
        block = start if start is not None else self._cursor
        pos = 0
        while pos < total:
            block = self.prepare_append(block)
            count = min(block.capacity - block.filled, total - pos)
            block.data[block.filled:block.filled + count] = view[pos:pos + count]
            block.filled += count
            self._cursor = block
            pos += count
        return block

    def append_buffer(self, source, offset=0):
        """
        Copy the contents of another SegmentedBuffer, starting at its
        logical `offset`, to the end of this one. The source is unchanged.
        """
        if source is self:
            raise ValueError("cannot append a buffer to itself")
        block = self._cursor
        for src in source.blocks():
            if offset >= src.filled:
                offset -= src.filled
                continue
            block = self.append_bytes(src.view()[offset:], block)
            offset = 0
        return block

    # --- Searching ---

    def contains(self, needle):
        """
        Look for `needle` across block boundaries.

        Returns (found, block, offset) where block and offset locate the
        first byte of the first occurrence, or (False, None, None).

        The scan restarts from the next byte on a mismatch without going
        back, so a needle whose prefix repeats (b"aab" in b"aaab") can be
        missed. An empty needle is found at the start of the head block.
        """
        if self.head is None:
            raise ValueError("operation on a released buffer")
        size = len(needle)
        if size == 0:
            return True, self.head, 0

        matched = 0
        found_block, found_offset = None, None
        for block in self.blocks():
            data = block.data
            for i in range(block.filled):
                if data[i] == needle[matched]:
                    if matched == 0:
                        found_block, found_offset = block, i
                    matched += 1
                    if matched == size:
                        return True, found_block, found_offset
                else:
                    matched = 0
        return False, None, None

    def __contains__(self, needle):
        return self.contains(needle)[0]

    # --- Output ---

    def to_buffer(self, dest, max_len=None):
        """
        Copy the joined contents into the writable buffer `dest`, at most
        `max_len` bytes (default: the size of `dest`). Returns True if
        everything fit; otherwise as much as fits is written and False is
        returned.
        """
        out = memoryview(dest)
        if max_len is None or max_len > out.nbytes:
            max_len = out.nbytes
        filled = 0
        for block in self.blocks():
            count = block.filled
            if filled + count > max_len:
                count = max_len - filled
                out[filled:filled + count] = block.data[:count]
                return False
            out[filled:filled + count] = block.data[:count]
            filled += count
        return True

    def to_file(self, fp):
        """
        Write every block to the binary file object `fp`.
        Returns (ok, bytes_written); ok is False after the first short write.
        Bytes already written stay written.
        """
        written = 0
        for block in self.blocks():
            if not block.filled:
                continue
            count = fp.write(block.view()) or 0
            written += count
            if count != block.filled:
                return False, written
        return True, written

    def to_bytes(self):
        """
        The contents as one bytes object of exactly len(self) bytes.
        NUL bytes appended earlier are kept as they are.
        """
        out = bytearray(len(self))
        self.to_buffer(out)
        return bytes(out)

    __bytes__ = to_bytes

    def __iter__(self):
        for block in self.blocks():
            yield from block.data[:block.filled]

    # --- Capacity ---

    def truncate(self, size):
        """
        With size 0, free every block after the head; the head keeps its
        contents. Otherwise keep just enough blocks for a capacity of at
        least `size`, freeing the rest or linking new empty blocks.
        """
        if size < 0:
            raise ValueError(f"negative truncate size {size}")
        if self.head is None:
            raise ValueError("operation on a released buffer")

        keep = self.head
        if size > 0:
            capacity = keep.capacity
            while capacity < size:
                if keep.next is None:
                    keep.next = self._new_block()
                keep = keep.next
                capacity += keep.capacity

        block = keep.next
        keep.next = None
        while block is not None:
            next_block = block.next
            self.allocator.deallocate(block.data)
            block.data = block.next = None
            block = next_block

        self._cursor = self.head
        return True

    def potential(self):
        """Number of bytes the allocated blocks can hold."""
        return sum(block.capacity for block in self.blocks())

    def flush(self):
        """Empty the buffer but keep its blocks for reuse."""
        for block in self.blocks():
            block.filled = 0
        self._cursor = self.head

    def __len__(self):
        return sum(block.filled for block in self.blocks())

    def release(self):
        """Free every block. The buffer is unusable afterwards."""
        block = self.head
        while block is not None:
            next_block = block.next
            self.allocator.deallocate(block.data)
            block.data = block.next = None
            block = next_block
        self.head = self._cursor = None
