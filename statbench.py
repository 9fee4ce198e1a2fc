"""
statbench.py - discover as many paths as possible in a time limit, then
time stat() calls on them, in serial and in parallel
"""

import argparse
import math
import multiprocessing
import os
import sys
import tempfile
import time
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, wait

from dateutil.parser import parse

WORKERS = 24  # parallel stat() fan-out
BATCH = 256  # paths per scratch file write while discovering
DEFAULT_FORMAT = "key-value"
DEFAULT_LOG = os.path.join(tempfile.gettempdir(), "metadata-test.log")
# RAM backed scratch space for the discovered path list, when there is one
SCRATCH_DIR = "/dev/shm" if os.path.isdir("/dev/shm") else None

BenchmarkResult = namedtuple(
    "BenchmarkResult",
    "timestamp paths_found paths_time paths_rate "
    "serial_time serial_rate parallel_time parallel_rate",
)
# output key for each BenchmarkResult field, in output order
KEYS = (
    "testTimestamp",
    "pathsFound",
    "pathsTime",
    "pathsRate",
    "serialStatTime",
    "serialStatRate",
    "parallelStatTime",
    "parallelStatRate",
)

# build list of output formats available
FORMATS = {}


def output_format(name):
    """output_format - decorator to collect output formats

    :param str name: name used with --format
    """

    def register(func):
        FORMATS[name] = func
        return func

    return register


class Formatter(
    argparse.ArgumentDefaultsHelpFormatter,
    argparse.RawDescriptionHelpFormatter,
):
    pass


class Parser(argparse.ArgumentParser):
    """Bad or missing arguments show the help text, not an error"""

    def error(self, message):
        self.print_help()
        self.exit()


def make_parser():
    """
    make_parser - make an argparse.ArgumentParser

    :return: parser
    :rtype: argparse.ArgumentParser
    """

    description = [
        "Run rudimentary user-space traversal and statting tests on a DIR.\n",
        "  1) scan DIR for paths for --time seconds",
        "  2) stat() all paths found in (1) in parallel (--workers threads)",
        "  3) stat() all paths found in (1) in serial",
        "Results go to stdout and are appended to --log FILE.\n",
        "NOTE: path discovery and stat rates are highly affected by filesystem",
        "      caching (especially on network filesystems where the client adds",
        "      a second layer of cache).  First runs will likely show the 'cold'",
        "      rates, later runs (--repeat) the 'warm' rates.  Paths are only",
        "      discovered once, every repeat stats the same paths.\n",
        "Formats:",
    ]
    for name, func in FORMATS.items():
        doc = func.__doc__.split("\n", 1)[0]
        description.append(f"{name:>12}: {doc}")
    parser = Parser(description="\n".join(description), formatter_class=Formatter)

    def format_check(x):
        if x not in FORMATS:
            sys.stderr.write(f"Error: '{x}' is not a valid FORMAT. See --help\n")
            return DEFAULT_FORMAT
        return x

    group = parser.add_argument_group("required arguments")
    group.add_argument(
        "--target", required=True, help="the directory to scan / test", metavar="DIR"
    )
    group.add_argument(
        "--time",
        type=positive(float),
        default=60,
        help="seconds allowed for the search phase, it may end sooner if "
        "the paths on the filesystem are exhausted first",
        metavar="SECONDS",
    )

    group = parser.add_argument_group("repeat options")
    group.add_argument(
        "--repeat",
        type=positive(int),
        default=1,
        help="run the test this many times, --until may stop it sooner",
        metavar="COUNT",
    )
    group.add_argument(
        "--delay",
        type=positive(float, allow_zero=True),
        default=0,
        help="pause this long between each --repeat",
        metavar="SECONDS",
    )
    group.add_argument(
        "--until",
        help="don't start new repeats after this time, free format, "
        "e.g. YYYYMMDDHHMM",
        metavar="TIME",
    )

    group = parser.add_argument_group("output options")
    group.add_argument(
        "--format",
        type=format_check,
        default=DEFAULT_FORMAT,
        help="output format from list above",
        metavar="FORMAT",
    )
    group.add_argument(
        "--log", default=DEFAULT_LOG, help="append results to this file", metavar="FILE"
    )

    parser.add_argument(
        "--workers",
        type=positive(int),
        default=WORKERS,
        help="number of threads for the parallel stat test",
        metavar="N",
    )

    return parser


def positive(type_, allow_zero=False):
    """Return an argparse type callable for positive (or non-negative) numbers"""

    def check(x):
        try:
            value = type_(x)
        except ValueError:
            raise argparse.ArgumentTypeError(f"{x} is not a number")
        if not math.isfinite(value):
            raise argparse.ArgumentTypeError(f"{x} is not a finite number")
        if value < 0 or (value == 0 and not allow_zero):
            raise argparse.ArgumentTypeError(f"{x} is out of range")
        return value

    return check


def get_options(args=None):
    """
    get_options - process arguments

    :param [str] args: list of arguments
    :return: options
    :rtype: argparse.Namespace
    """
    parser = make_parser()
    if not args:
        parser.error("no arguments")
    opt = parser.parse_args(args)
    # convert time text to time
    if opt.until:
        try:
            opt.until = parse(opt.until).timestamp()
        except Exception:
            print("Failed parsing --until '%s'" % opt.until)
            raise
    return opt


def same_device(entry, dev):
    """Is the DirEntry entry on device dev, i.e. not across a mount point"""
    return entry.stat(follow_symlinks=False).st_dev == dev


def scan_tree(root):
    """scan_tree - generator, walk root depth first, yield lists of paths

    Lists are at most BATCH long, so a walk stopped part way through a big
    directory has already handed on most of what it read.

    Only root is followed if it's a symlink, and directories on other devices
    are listed but not entered (like `find -H root -xdev`).

    :param str root: path to start from
    """
    stack = [root]
    dev = os.stat(root).st_dev
    while stack:
        top = stack.pop()
        found = []
        try:
            with os.scandir(top) as entries:
                for entry in entries:
                    found.append(entry.path)
                    if len(found) >= BATCH:
                        yield found
                        found = []
                    try:
                        if entry.is_dir(follow_symlinks=False) and same_device(
                            entry, dev
                        ):
                            stack.append(entry.path)
                    except OSError:
                        pass  # vanished or unreadable, still listed
        except OSError:
            pass  # can't list this dir, keep what was read
        if found:
            yield found


def _write_paths(root, path_file):
    """Child process for discover(), stream NUL terminated paths to path_file"""
    with open(path_file, "wb", buffering=0) as out:
        for found in scan_tree(root):
            out.write(b"".join(os.fsencode(i) + b"\0" for i in found))


def read_paths(path_file):
    """Read NUL terminated paths, dropping a partial final record"""
    with open(path_file, "rb") as inp:
        records = inp.read().split(b"\0")
    return tuple(os.fsdecode(i) for i in records[:-1])


def discover(root, time_budget):
    """discover - find as many paths under root as possible in time_budget

    The walk runs in a child process which is terminated when time is up, so
    a slow directory listing can't overrun the limit.  Whatever the child
    wrote before that is the result.

    :param str root: directory to search
    :param float time_budget: seconds allowed for searching
    :return: paths found
    :rtype: tuple
    """
    if not os.path.isdir(root):
        raise NotADirectoryError(root)
    if not os.access(root, os.R_OK | os.X_OK):
        raise PermissionError(f"can't read {root}")
    if time_budget <= 0:
        raise ValueError(f"time budget must be positive, not {time_budget}")
    root = os.path.abspath(root)
    fd, path_file = tempfile.mkstemp(prefix="metadata-test-tmp.", dir=SCRATCH_DIR)
    os.close(fd)
    proc = multiprocessing.Process(target=_write_paths, args=(root, path_file))
    try:
        proc.start()
        proc.join(time_budget)
        if proc.is_alive():
            sys.stderr.write(f"Search stopped by {time_budget:g} second limit\n")
            proc.terminate()
            proc.join()
        return read_paths(path_file)
    finally:
        if proc.is_alive():  # interrupted
            proc.terminate()
            proc.join()
        os.unlink(path_file)


def rate(count, duration):
    """Calls per second, 0.0 rather than dividing by zero"""
    if not count or duration <= 0:
        return 0.0
    return count / duration


def stat_paths(paths):
    """stat_paths - lstat() each path in order, ignoring failures

    :param [str] paths: paths to stat
    :return: number of calls made
    :rtype: int
    """
    for path in paths:
        try:
            os.lstat(path)
        except OSError:
            pass  # vanished etc., still counts as a call
    return len(paths)


def partition(paths, workers):
    """partition - split paths into workers contiguous chunks

    Chunks are len(paths) // workers long, the first len(paths) % workers
    chunks get one more path, so every path is in exactly one chunk.

    :param sequence paths: paths to split
    :param int workers: number of chunks
    :return: chunks, some may be empty
    :rtype: list
    """
    if workers < 1:
        raise ValueError(f"need at least one worker, not {workers}")
    size, extra = divmod(len(paths), workers)
    chunks = []
    start = 0
    for i in range(workers):
        end = start + size + (1 if i < extra else 0)
        chunks.append(paths[start:end])
        start = end
    return chunks


def bench_serial(paths):
    """Time stat() of all paths, one at a time

    :return: (seconds, calls per second)
    """
    start = time.perf_counter()
    stat_paths(paths)
    duration = time.perf_counter() - start
    return duration, rate(len(paths), duration)


def bench_parallel(paths, workers=WORKERS):
    """Time stat() of all paths, split over workers threads

    :return: (seconds, calls per second)
    """
    chunks = [i for i in partition(paths, workers) if i]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        start = time.perf_counter()
        done, _ = wait([pool.submit(stat_paths, chunk) for chunk in chunks])
        duration = time.perf_counter() - start
    for future in done:
        future.result()  # re-raise anything unexpected
    return duration, rate(len(paths), duration)


def run_tests(opt):
    """run_tests - generator, run the tests opt.repeat times

    Paths are only discovered in the first run, later runs reuse them (and
    report the first run's search time / rate).

    :param argparse.Namespace opt: command line options
    :return: one BenchmarkResult per run
    """
    paths = None
    run_count = 0
    while run_count < opt.repeat:
        if run_count:
            if opt.until and time.time() >= opt.until:
                break
            time.sleep(opt.delay)
        start_ts = int(time.time())

        if paths is None:
            start = time.perf_counter()
            paths = discover(opt.target, opt.time)
            paths_time = time.perf_counter() - start
            paths_rate = rate(len(paths), paths_time)
            sys.stderr.write(f"{len(paths)} paths in {paths_time:.2f} seconds\n")

        parallel_time, parallel_rate = bench_parallel(paths, opt.workers)
        serial_time, serial_rate = bench_serial(paths)

        yield BenchmarkResult(
            start_ts,
            len(paths),
            paths_time,
            paths_rate,
            serial_time,
            serial_rate,
            parallel_time,
            parallel_rate,
        )
        run_count += 1


def field_text(result):
    """Text for each field of result, counts as ints, others to 0.1"""
    return [str(i) for i in result[:2]] + ["%.1f" % i for i in result[2:]]


@output_format("csv")
def csv_text(result):
    """One comma separated line per run, no header"""
    return ",".join(field_text(result)) + "\n"


@output_format("key-value")
def key_value_text(result):
    """One 'key: value' line per field"""
    return "".join(f"{k}: {v}\n" for k, v in zip(KEYS, field_text(result)))


def main():
    """main - get options, run tests, output results"""
    opt = get_options(sys.argv[1:])
    if not os.path.isdir(opt.target):
        sys.exit(f"Error: '{opt.target}' is not a directory")
    if not os.access(opt.target, os.R_OK | os.X_OK):
        sys.exit(f"Error: '{opt.target}' is not readable")
    start = time.time()
    with open(opt.log, "a") as log:
        for result in run_tests(opt):
            text = FORMATS[opt.format](result)
            sys.stdout.write(text)
            sys.stdout.flush()
            log.write(text)
            log.flush()
    sys.stderr.write("%.2g seconds\n" % (time.time() - start))


if __name__ == "__main__":
    main()
