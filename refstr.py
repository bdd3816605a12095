#!/usr/bin/env python3
"""
Reference STR period and repeat-length scanner

For every position of a reference sequence determines:
1. period: length of the best repeat unit starting at that position (1..max_period)
2. repeat length: number of consecutive copies of that unit around the position

The unit is determined only by the sequence from the position onwards; copies of
that same unit found upstream are added to the repeat length.  Forward values for
all positions are computed in a single pass per period (O(L * max_period)), the
backward extension is computed on demand and cached.
"""

import numpy as np
from typing import List, Tuple, Dict, Iterator, Optional, Union
import argparse
import operator
from dataclasses import dataclass
from multiprocessing import Pool, cpu_count
import time


DEFAULT_MAX_PERIOD = 8
DEFAULT_MAX_REPEAT_LENGTH = 20
DEFAULT_CHUNK_SIZE = 1_000_000

# Resolved repeat lengths are always >= 1
_UNRESOLVED = 0

# Optional: JIT acceleration with numba when available
HAVE_NUMBA = False
try:
    import numba as _nb  # type: ignore
    HAVE_NUMBA = True
except Exception:
    _nb = None  # type: ignore


def _forward_run(codes: np.ndarray, position: int, period: int) -> int:
    """Consecutive offsets j >= position (j + period < n) with codes[j] == codes[j + period].

    Compared in doubling numpy blocks so long runs (N blocks, homopolymers) stay cheap.
    """
    n = codes.shape[0]
    run = 0
    block = 64
    while position + run + period < n:
        lo = position + run
        hi = min(n - period, lo + block)
        mismatch = np.flatnonzero(codes[lo:hi] != codes[lo + period:hi + period])
        if mismatch.size:
            return run + int(mismatch[0])
        run = hi - position
        block *= 2
    return run


def _backward_run(codes: np.ndarray, position: int, period: int) -> int:
    """Consecutive offsets j < position (j >= 0) with codes[j] == codes[j + period].

    Requires position + period <= n.
    """
    run = 0
    block = 64
    while position - run > 0:
        hi = position - run
        lo = max(0, hi - block)
        mismatch = np.flatnonzero(codes[lo:hi] != codes[lo + period:hi + period])
        if mismatch.size:
            return position - 1 - lo - int(mismatch[-1])
        run = position - lo
        block *= 2
    return run


def _forward_pass(codes: np.ndarray, start: int, end: int, max_period: int,
                  edge_runs: np.ndarray, periods: np.ndarray, counts: np.ndarray) -> None:
    """Fill best period and forward repeat count for positions in [start, end).

    For a period k the forward count at i is 1 + run // k where run is the number
    of consecutive offsets j >= i with codes[j] == codes[j + k].  Runs are tracked
    right to left so every period costs a single pass over the window, starting
    from ``edge_runs[k]``, the run at the right edge measured past ``end``.
    """
    n = codes.shape[0]
    for i in range(end - start):
        periods[i] = 1
        counts[i] = 0

    for k in range(1, max_period + 1):
        # last position whose unit of length k still fits in the sequence
        last = min(end, n - k + 1) - 1
        if last < start:
            break

        run = edge_runs[k]
        for i in range(last, start - 1, -1):
            if i < last:
                if codes[i] == codes[i + k]:
                    run += 1
                else:
                    run = 0
            count = 1 + run // k
            # strictly greater only: ascending k means ties keep the smaller period
            if count > counts[i - start]:
                counts[i - start] = count
                periods[i - start] = k


def _resolve_all(codes: np.ndarray, start: int, back_runs: np.ndarray, wanted: np.ndarray,
                 periods: np.ndarray, counts: np.ndarray, repeat_lengths: np.ndarray) -> None:
    """Resolve every pending repeat length, one left-to-right pass per wanted period.

    ``back_runs[k]`` is the backward run at ``start`` for period k; it is carried
    forward position by position instead of walking back from each position.
    """
    n = codes.shape[0]
    size = repeat_lengths.shape[0]
    for k in range(1, wanted.shape[0]):
        if not wanted[k]:
            continue
        back_run = back_runs[k]
        for i in range(start, min(start + size, n - k + 1)):
            if i > start:
                if codes[i - 1] == codes[i - 1 + k]:
                    back_run += 1
                else:
                    back_run = 0
            idx = i - start
            if periods[idx] == k and repeat_lengths[idx] == _UNRESOLVED:
                repeat_lengths[idx] = counts[idx] + back_run // k


if HAVE_NUMBA:
    _forward_pass = _nb.njit(cache=True)(_forward_pass)
    _resolve_all = _nb.njit(cache=True)(_resolve_all)


def _as_buffer(sequence: Union[bytes, bytearray, memoryview, str]) -> memoryview:
    """Read-only byte view over the caller's sequence (text is encoded once)."""
    if isinstance(sequence, str):
        sequence = sequence.encode('ascii')
    return memoryview(sequence).cast('B').toreadonly()


def repeat_count(sequence: Union[bytes, str], position: int, period: int,
                 forward_only: bool = True) -> int:
    """Count copies of the unit ``sequence[position:position + period]``.

    Copies are whole, adjacent, non-overlapping blocks compared against the unit at
    ``position``.  Extension stops at the first mismatching block in each direction.

    Returns:
        0 when the unit does not fit in the sequence, otherwise the number of copies
        (the unit itself included) forward, plus backward unless ``forward_only``.
    """
    seq = _as_buffer(sequence)
    n = len(seq)
    if position + period > n:
        return 0
    unit = seq[position:position + period]
    copies = 1

    offset = position + period
    while offset + period <= n and seq[offset:offset + period] == unit:
        copies += 1
        offset += period

    if forward_only:
        return copies

    offset = position - period
    while offset >= 0 and seq[offset:offset + period] == unit:
        copies += 1
        offset -= period
    return copies


def best_period_and_forward_count(sequence: Union[bytes, str], position: int,
                                  max_period: int) -> Tuple[int, int]:
    """Best period at ``position`` and its forward-only repeat count.

    Candidates are tried in ascending order and replace the current best only on a
    strictly larger count, so ties go to the smaller period.
    """
    best_period = 1
    best_count = repeat_count(sequence, position, 1)
    for period in range(2, max_period + 1):
        candidate = repeat_count(sequence, position, period)
        if candidate > best_count:
            best_period = period
            best_count = candidate
    return best_period, best_count


@dataclass
class STRSite:
    """Period and repeat length of a single reference position."""
    chrom: str
    position: int
    period: int
    repeat_length: int
    forward_count: int
    unit: str

    def to_tsv(self) -> str:
        """Convert to per-position table row."""
        return f"{self.chrom}\t{self.position}\t{self.period}\t{self.repeat_length}\t{self.unit}"

    def to_bed(self) -> str:
        """Convert to BED (1bp interval, name = unit, score = repeat length)."""
        return (f"{self.chrom}\t{self.position}\t{self.position + 1}\t{self.unit}\t"
                f"{self.repeat_length}\t{self.period}")


class ReferenceSTRs:
    """Per-position STR period and repeat length over a window of a sequence.

    The window [start, end) only limits which positions can be queried; bases
    outside of it are still used for repeats crossing the window boundaries.
    The sequence is never copied.
    """

    def __init__(self, sequence: Union[bytes, bytearray, memoryview, str],
                 start: int = 0, end: Optional[int] = None,
                 max_period: int = DEFAULT_MAX_PERIOD):
        """
        Run the forward pass over the window.

        Args:
            sequence: Reference bases
            start: First position of the window (inclusive)
            end: Last position of the window (exclusive), defaults to the sequence length
            max_period: Largest unit length considered

        Raises:
            ValueError: if the window is not within the sequence or max_period < 1
        """
        view = _as_buffer(sequence)
        length = len(view)
        if end is None:
            end = length
        if start < 0 or end < start or end > length:
            raise ValueError(f"invalid window [{start}, {end}) for a sequence of length {length}")
        if max_period < 1:
            raise ValueError(f"max_period must be at least 1, got {max_period}")

        self._view = view
        self._codes = np.frombuffer(view, dtype=np.uint8)
        self._start = int(start)
        self._end = int(end)
        self._max_period = int(max_period)

        size = self._end - self._start
        n = len(view)
        edge_runs = np.zeros(self._max_period + 1, dtype=np.int64)
        for k in range(1, self._max_period + 1):
            last = min(self._end, n - k + 1) - 1
            if last < self._start:
                break
            edge_runs[k] = _forward_run(self._codes, last, k)

        self._periods = np.empty(size, dtype=np.int32)
        self._forward_counts = np.empty(size, dtype=np.int32)
        self._repeat_lengths = np.full(size, _UNRESOLVED, dtype=np.int32)
        _forward_pass(self._codes, self._start, self._end, self._max_period,
                      edge_runs, self._periods, self._forward_counts)

    @classmethod
    def of(cls, sequence: Union[bytes, bytearray, memoryview, str], start: int, end: int,
           max_period: int) -> 'ReferenceSTRs':
        """Scanner over the window [start, end) of ``sequence``."""
        return cls(sequence, start, end, max_period)

    @property
    def sequence(self) -> memoryview:
        return self._view

    @property
    def start(self) -> int:
        return self._start

    @property
    def end(self) -> int:
        return self._end

    @property
    def max_period(self) -> int:
        return self._max_period

    def __len__(self) -> int:
        return self._end - self._start

    def _index(self, position: int) -> int:
        # TypeError for non-integral positions such as 2.5
        position = operator.index(position)
        if not self._start <= position < self._end:
            raise IndexError(f"position {position} is outside [{self._start}, {self._end})")
        return position - self._start

    def period(self, position: int) -> int:
        """Length of the repeat unit starting at ``position``."""
        return int(self._periods[self._index(position)])

    def forward_count(self, position: int) -> int:
        """Copies of the unit counted only from ``position`` onwards."""
        return int(self._forward_counts[self._index(position)])

    def repeat_length(self, position: int) -> int:
        """Copies of the unit at ``position`` counting forward and backward.

        Computed on first request; the single element store makes concurrent first
        requests harmless as both compute the same value.
        """
        idx = self._index(position)
        cached = int(self._repeat_lengths[idx])
        if cached == _UNRESOLVED:
            period = int(self._periods[idx])
            cached = int(self._forward_counts[idx]) + _backward_run(
                self._codes, self._start + idx, period) // period
            self._repeat_lengths[idx] = cached
        return cached

    def repeat_unit(self, position: int) -> memoryview:
        """Read-only view of the unit bases."""
        idx = self._index(position)
        position = self._start + idx
        return self._view[position:position + int(self._periods[idx])]

    def repeat_unit_as_string(self, position: int) -> str:
        """Unit bases as text."""
        return self.repeat_unit(position).tobytes().decode('ascii', errors='replace')

    def periods(self) -> np.ndarray:
        """Periods for the whole window (copy)."""
        return self._periods.copy()

    def repeat_lengths(self) -> np.ndarray:
        """Repeat lengths for the whole window, resolving any pending ones (copy)."""
        pending = self._repeat_lengths == _UNRESOLVED
        if pending.any():
            wanted = np.zeros(self._max_period + 1, dtype=np.bool_)
            wanted[np.unique(self._periods[pending])] = True
            back_runs = np.zeros(self._max_period + 1, dtype=np.int64)
            for k in np.flatnonzero(wanted):
                back_runs[k] = _backward_run(self._codes, self._start, int(k))
            _resolve_all(self._codes, self._start, back_runs, wanted,
                         self._periods, self._forward_counts, self._repeat_lengths)
        return self._repeat_lengths.copy()

    def sites(self, chrom: str = "sequence") -> Iterator[STRSite]:
        """Yield one STRSite per window position, in order."""
        periods = self._periods
        forward_counts = self._forward_counts
        repeat_lengths = self.repeat_lengths()
        for idx, position in enumerate(range(self._start, self._end)):
            period = int(periods[idx])
            yield STRSite(
                chrom=chrom,
                position=position,
                period=period,
                repeat_length=int(repeat_lengths[idx]),
                forward_count=int(forward_counts[idx]),
                unit=self._view[position:position + period].tobytes().decode('ascii', errors='replace'),
            )


def _accumulate_histogram(hist: np.ndarray, strs: ReferenceSTRs, max_repeat_length: int) -> None:
    """Add window counts per (period, repeat length); longer repeats go to the last column."""
    if len(strs) == 0:
        return
    lengths = np.minimum(strs.repeat_lengths(), max_repeat_length)
    np.add.at(hist, (strs.periods(), lengths), 1)


def _histogram_worker(args):
    """Worker function for parallel per-chromosome histograms.

    Args:
        args: Tuple of (chrom, seq, start, end, config_dict)

    Returns:
        Tuple of (chrom, histogram array)
    """
    chrom, seq, start, end, config = args
    hist = np.zeros((config['max_period'] + 1, config['max_repeat_length'] + 1), dtype=np.int64)
    chunk_size = config['chunk_size']
    for w_start in range(start, end, chunk_size):
        strs = ReferenceSTRs.of(seq, w_start, min(end, w_start + chunk_size), config['max_period'])
        _accumulate_histogram(hist, strs, config['max_repeat_length'])
    return chrom, hist


def _format_elapsed(elapsed: float) -> str:
    return f"{int(elapsed//60)}m {int(elapsed%60)}s" if elapsed >= 60 else f"{int(elapsed)}s"


def _print_progress(done: int, total: int, label: str, start_time: float, end: str = '') -> None:
    progress_pct = done / total * 100 if total else 100.0
    bar_length = 40
    filled = int(bar_length * done / total) if total else bar_length
    bar = '█' * filled + '░' * (bar_length - filled)
    elapsed_str = _format_elapsed(time.time() - start_time)
    print(f"\r[{bar}] {progress_pct:.1f}% {label} - {elapsed_str}", end=end, flush=True)


class ReferenceSTRScanner:
    """Runs ReferenceSTRs over the chromosomes (or regions) of a FASTA reference."""

    def __init__(self, reference_file: str, max_period: int = DEFAULT_MAX_PERIOD,
                 max_repeat_length: int = DEFAULT_MAX_REPEAT_LENGTH,
                 chunk_size: int = DEFAULT_CHUNK_SIZE, show_progress: bool = False):
        """
        Initialize the reference scanner.

        Args:
            reference_file: Path to reference genome FASTA
            max_period: Largest repeat unit length considered
            max_repeat_length: Repeat lengths above this are binned together in histograms
            chunk_size: Number of positions scanned per window
            show_progress: Show progress information
        """
        if max_period < 1:
            raise ValueError(f"max_period must be at least 1, got {max_period}")
        if max_repeat_length < 1:
            raise ValueError(f"max_repeat_length must be at least 1, got {max_repeat_length}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
        self.reference_file = reference_file
        self.max_period = max_period
        self.max_repeat_length = max_repeat_length
        self.chunk_size = chunk_size
        self.show_progress = show_progress
        self.sequences: Dict[str, bytes] = {}

    def load_reference(self) -> Dict[str, bytes]:
        """Load reference sequences from FASTA file."""
        sequences = {}
        current_chrom = None
        current_seq = []

        with open(self.reference_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line.startswith('>'):
                    if current_chrom:
                        sequences[current_chrom] = ''.join(current_seq).encode('ascii')
                    current_chrom = line[1:].split()[0]  # Extract chromosome name
                    current_seq = []
                elif line:
                    current_seq.append(line.upper())

        if current_chrom:
            sequences[current_chrom] = ''.join(current_seq).encode('ascii')

        self.sequences = sequences
        return sequences

    def parse_region(self, region: str) -> Tuple[str, int, int]:
        """Parse ``chrom`` or ``chrom:start-end`` (0-based, half-open) into a bounded region."""
        if region in self.sequences:
            return region, 0, len(self.sequences[region])

        chrom, sep, span = region.rpartition(':')
        if not sep or chrom not in self.sequences:
            raise ValueError(f"unknown chromosome in region '{region}'")
        start_str, dash, end_str = span.replace(',', '').partition('-')
        try:
            start = int(start_str)
            end = int(end_str) if dash and end_str else len(self.sequences[chrom])
        except ValueError:
            raise ValueError(f"malformed region '{region}'") from None
        if start < 0 or end < start or end > len(self.sequences[chrom]):
            raise ValueError(f"region '{region}' is outside {chrom} (length {len(self.sequences[chrom])})")
        return chrom, start, end

    def resolve_regions(self, regions: Optional[List[str]]) -> List[Tuple[str, int, int]]:
        if not regions:
            return [(chrom, 0, len(seq)) for chrom, seq in self.sequences.items()]
        return [self.parse_region(region) for region in regions]

    def iter_windows(self, chrom: str, start: int = 0, end: Optional[int] = None) -> Iterator[ReferenceSTRs]:
        """Yield scanners over consecutive windows of at most ``chunk_size`` positions."""
        seq = self.sequences[chrom]
        if end is None:
            end = len(seq)
        for w_start in range(start, end, self.chunk_size):
            yield ReferenceSTRs.of(seq, w_start, min(end, w_start + self.chunk_size), self.max_period)

    def iter_sites(self, chrom: str, start: int = 0, end: Optional[int] = None) -> Iterator[STRSite]:
        """Yield one STRSite per position of the region."""
        for strs in self.iter_windows(chrom, start, end):
            yield from strs.sites(chrom)

    def build_histogram(self, regions: Optional[List[str]] = None, n_jobs: int = -1) -> np.ndarray:
        """Count positions per (period, repeat length).

        Args:
            regions: Regions to scan (default: every chromosome)
            n_jobs: Parallel processes (0=all CPUs, -1 or 1=sequential)

        Returns:
            int64 array of shape (max_period + 1, max_repeat_length + 1); row 0 and
            column 0 are always zero.
        """
        targets = self.resolve_regions(regions)
        config = {
            'max_period': self.max_period,
            'max_repeat_length': self.max_repeat_length,
            'chunk_size': self.chunk_size,
        }
        tasks = [(chrom, self.sequences[chrom], start, end, config) for chrom, start, end in targets]
        hist = np.zeros((self.max_period + 1, self.max_repeat_length + 1), dtype=np.int64)

        start_time = time.time()
        if n_jobs in (-1, 1) or len(tasks) <= 1:
            results = map(_histogram_worker, tasks)
            pool = None
        else:
            pool = Pool(None if n_jobs == 0 else n_jobs)
            # Use imap_unordered for real-time progress updates
            results = pool.imap_unordered(_histogram_worker, tasks)

        try:
            for completed, (chrom, chrom_hist) in enumerate(results, 1):
                hist += chrom_hist
                if self.show_progress:
                    _print_progress(completed, len(tasks), f"({completed}/{len(tasks)}) {chrom} done", start_time)
        finally:
            if pool is not None:
                pool.close()
                pool.join()

        if self.show_progress:
            print()  # New line after progress bar
        return hist

    def save_results(self, output_file: str, regions: Optional[List[str]] = None,
                     format_type: str = "tsv", n_jobs: int = -1) -> int:
        """Save per-position results (or the histogram) to file.

        Returns:
            Number of positions scanned
        """
        if format_type == "histogram":
            hist = self.build_histogram(regions, n_jobs=n_jobs)
            with open(output_file, 'w') as f:
                f.write("# Positions per period (rows) and repeat length (columns); "
                        f"last column counts repeat lengths >= {self.max_repeat_length}\n")
                f.write("period\t" + "\t".join(str(r) for r in range(1, self.max_repeat_length + 1)) + "\n")
                for period in range(1, self.max_period + 1):
                    f.write(f"{period}\t" + "\t".join(str(int(c)) for c in hist[period, 1:]) + "\n")
            return int(hist.sum())

        if format_type not in ("tsv", "bed"):
            raise ValueError(f"unsupported format '{format_type}'")

        targets = self.resolve_regions(regions)
        total = sum(end - start for _, start, end in targets)
        written = 0
        start_time = time.time()

        with open(output_file, 'w') as f:
            if format_type == "tsv":
                f.write("# chrom\tpos\tperiod\trepeat_length\tunit\n")
            else:
                f.write("# Reference STRs (BED, one line per position)\n")
                f.write("# chrom\tstart\tend\tunit\trepeat_length\tperiod\n")
            for chrom, start, end in targets:
                for strs in self.iter_windows(chrom, start, end):
                    for site in strs.sites(chrom):
                        f.write((site.to_tsv() if format_type == "tsv" else site.to_bed()) + "\n")
                    written += len(strs)
                    if self.show_progress:
                        _print_progress(written, total, f"{chrom}:{strs.end:,}", start_time)

        if self.show_progress:
            print()
        return written


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Per-position STR period and repeat length of a reference sequence",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Per-position table for the whole reference
  refstr reference.fa -o strs.tsv

  # Only part of a chromosome (0-based, half-open), BED output
  refstr reference.fa --region chr20:1000000-2000000 --format bed -o strs.bed

  # Period x repeat-length counts using all CPUs
  refstr reference.fa --format histogram --jobs 0 -o strs_hist.tsv
        """
    )
    parser.add_argument("reference", help="Reference genome FASTA file")
    parser.add_argument("-o", "--output", default="strs.tsv", help="Output file (default: strs.tsv)")
    parser.add_argument("--format", choices=["tsv", "bed", "histogram"], default="tsv",
                        help="Output format (default: tsv)")
    parser.add_argument("--region", action="append", dest="regions",
                        help="Region chrom[:start-end] to scan, may be repeated (default: whole reference)")
    parser.add_argument("--max-period", type=int, default=DEFAULT_MAX_PERIOD,
                        help=f"Maximum repeat unit length (default: {DEFAULT_MAX_PERIOD})")
    parser.add_argument("--max-repeat-length", type=int, default=DEFAULT_MAX_REPEAT_LENGTH,
                        help=f"Histogram repeat length cap (default: {DEFAULT_MAX_REPEAT_LENGTH})")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                        help=f"Positions per scanning window (default: {DEFAULT_CHUNK_SIZE})")
    parser.add_argument("--jobs", type=int, default=4,
                        help="Number of parallel CPU cores for histograms (default: 4, 0=use all CPUs, -1=disable parallelism)")
    parser.add_argument("--progress", action="store_true", help="Show progress bars where applicable")

    args = parser.parse_args(argv)

    if args.max_period < 1:
        parser.error("--max-period must be at least 1")
    if args.max_repeat_length < 1:
        parser.error("--max-repeat-length must be at least 1")
    if args.chunk_size < 1:
        parser.error("--chunk-size must be at least 1")

    if args.jobs == 0:
        parallel_info = f"all {cpu_count()} CPU cores"
    elif args.jobs in (-1, 1):
        parallel_info = "disabled (sequential)"
    else:
        parallel_info = f"{args.jobs} CPU cores"

    print(f"Reference STR Scanner")
    print(f"{'=' * 60}")
    print(f"Reference:    {args.reference}")
    print(f"Output:       {args.output} ({args.format} format)")
    print(f"Regions:      {', '.join(args.regions) if args.regions else 'whole reference'}")
    if args.format == "histogram":
        print(f"Parallelism:  {parallel_info}")
    print(f"")
    print(f"Scan Parameters:")
    print(f"  Max period:          {args.max_period} bp")
    if args.format == "histogram":
        print(f"  Repeat length cap:   {args.max_repeat_length}")
    print(f"  Window size:         {args.chunk_size:,} positions")
    print()

    scanner = ReferenceSTRScanner(
        args.reference,
        max_period=args.max_period,
        max_repeat_length=args.max_repeat_length,
        chunk_size=args.chunk_size,
        show_progress=args.progress,
    )
    sequences = scanner.load_reference()
    print(f"Loaded {len(sequences)} sequence(s), {sum(len(s) for s in sequences.values()):,} bp")

    try:
        scanner.resolve_regions(args.regions)
    except ValueError as e:
        parser.error(str(e))

    positions = scanner.save_results(args.output, args.regions, args.format, n_jobs=args.jobs)

    print(f"\n{'=' * 60}")
    print(f"Completed! Scanned {positions:,} positions.")
    print(f"Results saved to {args.output}")
    return 0


if __name__ == "__main__":
    main()
