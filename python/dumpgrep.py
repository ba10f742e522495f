#!/usr/bin/env python3
"""
Name: dumpgrep
Description: find printable sections of a binary dump that contain search terms
Author: Niklas Rosenstein
License: mit
"""

import sys
import os
import errno
import stat
import argparse

from byteexpr import parse_bytes, ExpressionError
from charbuffer import SegmentedBuffer, AllocationError
from memtrack import AllocationTracker

# Exit codes, following errno like the C tools of old
EX_SUCCESS = 0
EX_USAGE = errno.EINVAL
EX_NOMEM = errno.ENOMEM
EX_NOENT = errno.ENOENT
EX_CANCELED = errno.ECANCELED
EX_IOERR = errno.EIO

DEFAULT_BLOCK_SIZE = 1024
MIN_BLOCK_SIZE = 128
MIN_RESULT_SIZE = 128
SKIP_CHUNK = 4 * 1024
PROGRESS_STEP = 10 * 1024 * 1024

DELIMITER = b'>' * 36 + b'\n'
WHITESPACE = b'\n\r\t '

program_name = os.path.basename(sys.argv[0])

EXPRESSION_HELP = """\
<bytes> arguments can be a simple mathematical expression. No spaces
are allowed and the operators are +, -, * and /. The additional
operators are k (= *1000), m (= *1000^2), K (= *1024) and M (= *1024^2).

For example, to achieve 1Mb and 100 bytes, the expression 1M+100
can be used. Note that the expression does not follow mathematical
rules such as operator precedence.
"""


class SeekError(Exception):
    """The requested number of bytes could not be skipped."""


class ShortWriteError(OSError):
    """The output did not accept everything that was written to it."""


def is_printable(value, whitespace=True):
    """
    True for the printable ASCII range and, if `whitespace` is set, for
    newline, carriage return and tab. Space is always printable.
    """
    if 0x20 <= value <= 0x7e:
        return True
    return whitespace and value in WHITESPACE


def printable_table(whitespace=True):
    """is_printable() for every byte value, indexed by the byte."""
    return tuple(is_printable(b, whitespace) for b in range(256))


class ScanOptions:
    """Settings for one scan. Byte counts are plain ints."""

    def __init__(self, terms, allowed=0, block_size=DEFAULT_BLOCK_SIZE,
                 max_size=0, min_chunk=0, skip=0, until=0,
                 whitespace=True, verbose=False):
        self.terms = [os.fsencode(t) if isinstance(t, str) else bytes(t) for t in terms]
        self.allowed = allowed
        self.block_size = block_size
        self.max_size = max_size
        self.min_chunk = min_chunk
        self.skip = skip
        self.until = until
        self.whitespace = whitespace
        self.verbose = verbose

    @classmethod
    def from_args(cls, args):
        return cls(
            terms=args.terms,
            allowed=args.allowed,
            block_size=args.block_size,
            max_size=args.max_size,
            min_chunk=args.min_chunk,
            skip=args.skip,
            until=args.until,
            whitespace=args.whitespace,
            verbose=args.verbose,
        )

    def validate(self):
        """Raise ValueError for settings the scanner cannot work with."""
        if self.block_size < MIN_BLOCK_SIZE:
            raise ValueError(f"-b: buffer size must be at least {MIN_BLOCK_SIZE} bytes.")
        if self.max_size != 0 and self.max_size < MIN_RESULT_SIZE:
            raise ValueError(f"-m: must be >= {MIN_RESULT_SIZE} or 0.")
        for name in ('allowed', 'max_size', 'min_chunk', 'skip', 'until'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if not self.terms:
            raise ValueError("no search terms")
        if not all(self.terms):
            raise ValueError("search terms must not be empty")

    def describe(self, fp, input_name, output_name):
        """Print the settings, as shown with -v."""
        fp.write(f"Input File:             {input_name}\n")
        fp.write(f"Output file:            {output_name}\n")
        fp.write(f"unprintables allowed:   {self.allowed}\n")
        fp.write(f"Buffer size:            {self.block_size}\n")
        fp.write(f"Bytes to skip:          {self.skip}\n")
        fp.write(f"Max chunk-size:         {self.max_size}\n")
        fp.write(f"Min Sub-chunk size:     {self.min_chunk}\n")
        fp.write(f"Wspace as printables:   {'Yes' if self.whitespace else 'No'}\n")
        fp.write("Search Terms:\n")
        for term in self.terms:
            fp.write(f" |  {os.fsdecode(term)}\n")
        fp.write("\n")


class MatchEmitter:
    """
    Writes finished runs that contain at least one of the search terms.

    Each match is written as its byte offset, a delimiter line, the raw
    bytes of the run and two newlines.
    """

    def __init__(self, terms, out):
        self.terms = terms
        self.out = out
        self.emitted = 0

    def matches(self, buffer):
        # First hit wins; which term it was is not reported.
        for term in self.terms:
            if buffer.contains(term)[0]:
                return True
        return False

    def emit(self, buffer, offset):
        if not self.matches(buffer):
            return False

        self._write(b"%d\n" % offset)
        self._write(DELIMITER)
        ok, written = buffer.to_file(self.out)
        if not ok:
            raise ShortWriteError(errno.EIO, f"short write: {written} of {len(buffer)} bytes")
        self._write(b"\n\n")
        self.emitted += 1
        return True

    def _write(self, data):
        count = self.out.write(data) or 0
        if count != len(data):
            raise ShortWriteError(errno.EIO, f"short write: {count} of {len(data)} bytes")


class ScanEngine:
    """
    Single pass classifier that assembles printable runs byte by byte.

    Printable bytes go to the `printable` buffer. Unprintable bytes are
    parked in the `tolerance` buffer; if a printable byte follows before
    more than `allowed` of them have piled up, they become part of the run.
    Otherwise the run is closed, checked against the size limits and
    handed to the emitter.
    """

    def __init__(self, options, emitter, allocator=None, log=None):
        self.options = options
        self.emitter = emitter
        self.log = log if log is not None else sys.stderr
        self.table = printable_table(options.whitespace)

        self.printable = SegmentedBuffer(options.block_size, allocator)
        try:
            self.tolerance = SegmentedBuffer(options.block_size, allocator)
        except AllocationError:
            self.printable.release()
            raise

        self.offset = 0
        self.prev_printable = False
        self.runs = 0
        self.matches = 0
        self._reset_counters()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _reset_counters(self):
        self.printable_count = 0
        self.tolerance_count = 0
        self.chunk_size = 0
        self.max_chunk = 0

    def reset(self):
        """Drop the current run without looking at it."""
        self.printable.flush()
        self.tolerance.flush()
        self._reset_counters()

    def _within_budget(self):
        max_size = self.options.max_size
        return max_size == 0 or self.printable_count <= max_size

    def feed(self, value):
        """Classify one input byte."""
        printable = self.table[value]

        # Once the run holds more than max_size printable bytes, further
        # printable bytes take the unprintable path.
        if printable and self._within_budget():
            # max_chunk is only updated when the run closes, so a sub-run
            # cut short by an interruption does not count toward it.
            if not self.prev_printable:
                self.chunk_size = 0

            if self.tolerance_count:
                self.printable.append_buffer(self.tolerance)
                self.tolerance.flush()
                self.tolerance_count = 0

            self.printable.append_byte(value)
            self.printable_count += 1
            self.chunk_size += 1

        elif self.tolerance_count <= self.options.allowed:
            self.tolerance.append_byte(value)
            self.tolerance_count += 1

        else:
            self.close_run(self.offset)

        self.prev_printable = printable
        self.offset += 1

    def feed_bytes(self, data):
        for value in data:
            self.feed(value)

    def close_run(self, offset):
        """
        Finish the current run: emit it if it is a candidate, then start
        over with empty buffers. Returns True if the run was written.
        """
        self.max_chunk = max(self.max_chunk, self.chunk_size)
        self.runs += 1

        matched = False
        if self._within_budget() and self.max_chunk >= self.options.min_chunk:
            matched = self.emitter.emit(self.printable, offset)
            if matched:
                self.matches += 1
                if self.options.verbose:
                    print(f">> Matched with block of {self.max_chunk} max chars.", file=self.log)

        self.reset()
        return matched

    def finish(self):
        """Close a run still open at the end of the input."""
        if self.printable_count:
            return self.close_run(self.offset)
        self.reset()
        return False

    def close(self):
        if self.printable.head is not None:
            self.printable.release()
        if self.tolerance.head is not None:
            self.tolerance.release()


def stream_size(stream):
    """
    Size of a seekable regular file or in-memory stream. None for pipes,
    devices and /proc files, whose reported end (usually 0) means nothing.
    """
    if not stream.seekable():
        return None
    try:
        st = os.fstat(stream.fileno())
    except (AttributeError, OSError):
        pass
    else:
        if not stat.S_ISREG(st.st_mode):
            return None

    pos = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    stream.seek(pos)
    return end or None


def skip_input(stream, count):
    """
    Move `count` bytes forward in `stream`, seeking if possible and
    reading otherwise. Raises SeekError if the input is shorter.
    """
    if count == 0:
        return 0

    end = stream_size(stream)
    if end is not None:
        start = stream.tell()
        if start + count > end:
            raise SeekError(f"Could not skip {count} bytes, file may be too small.")
        stream.seek(start + count)
        return count

    skipped = 0
    while skipped < count:
        data = stream.read(min(SKIP_CHUNK, count - skipped))
        if not data:
            raise SeekError(f"Could not skip {count} bytes, file may be too small "
                            f"(stopped after {skipped}).")
        skipped += len(data)
    return skipped


def scan_stream(stream, options, out, allocator=None, log=None):
    """
    Scan a binary stream and write every matching run to `out`.
    Returns the number of runs written.

    Reading stops at the end of the input, or after the read that passes
    `options.until` bytes; in the latter case an unfinished run is dropped.
    """
    log = log if log is not None else sys.stderr
    passed = skip_input(stream, options.skip)

    emitter = MatchEmitter(options.terms, out)
    with ScanEngine(options, emitter, allocator, log) as engine:
        engine.offset = passed
        reported = passed // PROGRESS_STEP

        while True:
            chunk = stream.read(options.block_size)
            if not chunk:
                engine.finish()
                break

            engine.feed_bytes(chunk)
            passed += len(chunk)

            if options.verbose and passed // PROGRESS_STEP != reported:
                reported = passed // PROGRESS_STEP
                print(f"Passed {reported * 10}M bytes.", file=log)

            if options.until and passed > options.until:
                break

        return engine.matches


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that exits with EX_USAGE on bad arguments."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EX_USAGE, f"{self.prog}: {message}\n")


def byte_count(text):
    try:
        return parse_bytes(text)
    except ExpressionError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser():
    parser = UsageParser(
        description="Find printable sections of a binary dump that contain a search term.",
        usage="%(prog)s [options] dumpfile search-terms",
        epilog=EXPRESSION_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-o', dest='output', action='append', metavar='filename',
                        help='Write matching printable sections to this file instead of stdout.')
    parser.add_argument('-a', dest='allowed', type=byte_count, default=0, metavar='bytes',
                        help='The number of unprintable bytes allowed between two printable sections.')
    parser.add_argument('-b', dest='block_size', type=byte_count, default=DEFAULT_BLOCK_SIZE, metavar='bytes',
                        help=f'The buffer size used internally (default {DEFAULT_BLOCK_SIZE}).')
    parser.add_argument('-s', dest='skip', type=byte_count, default=0, metavar='bytes',
                        help='The number of bytes to skip from the beginning of the input file.')
    parser.add_argument('-m', dest='max_size', type=byte_count, default=0, metavar='bytes',
                        help='The maximum size of a result chunk; zero means no maximum.')
    parser.add_argument('-c', dest='min_chunk', type=byte_count, default=0, metavar='bytes',
                        help='The minimum size a printable sub-chunk must have (default 0).')
    parser.add_argument('-u', dest='until', type=byte_count, default=0, metavar='bytes',
                        help='Only process until this amount of bytes has been passed.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Be verbose about the input settings and the progress.')
    parser.add_argument('-w', dest='whitespace', action='store_false',
                        help='Do not treat whitespace as printable.')
    parser.add_argument('--memory-info', action='store_true',
                        help='Report block allocations that are still live after the scan.')
    parser.add_argument('dumpfile', help='The binary file to scan.')
    parser.add_argument('terms', nargs='+', metavar='search-term',
                        help='A section is printed if it contains at least one of these.')
    return parser


def main(argv=None):
    """Parses arguments and runs the scan. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.output and len(args.output) > 1:
        parser.error("-o: multiple parameters are not allowed.")
    output_path = args.output[0] if args.output else None

    options = ScanOptions.from_args(args)
    try:
        options.validate()
    except ValueError as e:
        parser.error(str(e))

    try:
        infile = open(args.dumpfile, 'rb')
    except OSError as e:
        print(f"{program_name}: could not open input file {args.dumpfile}: {e.strerror}", file=sys.stderr)
        return EX_NOENT

    if options.verbose:
        options.describe(sys.stderr, args.dumpfile, output_path or 'stdout')

    if output_path:
        try:
            outfile = open(output_path, 'wb')
        except OSError as e:
            infile.close()
            print(f"{program_name}: -o: File {output_path} could not be opened: {e.strerror}", file=sys.stderr)
            return EX_NOENT
    else:
        outfile = sys.stdout.buffer

    tracker = AllocationTracker() if args.memory_info else None

    result = EX_SUCCESS
    try:
        with infile:
            scan_stream(infile, options, outfile, allocator=tracker)
    except SeekError as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        result = EX_CANCELED
    except AllocationError:
        print(f"{program_name}: Memory error.", file=sys.stderr)
        result = EX_NOMEM
    except ShortWriteError as e:
        print(f"{program_name}: write error: {e.strerror}", file=sys.stderr)
        result = EX_IOERR
    finally:
        if output_path:
            outfile.close()
        else:
            outfile.flush()

    if tracker is not None:
        tracker.report(sys.stderr)
    if options.verbose:
        print(f"scan result: {result}", file=sys.stderr)
    return result


if __name__ == "__main__":
    sys.exit(main())
