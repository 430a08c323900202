#!/usr/bin/env python3
"""
Variable region extraction for same-length sequence libraries.

Oligo libraries such as CRISPR guide pools carry a variable region flanked by
constant sequence.  This script samples records, computes the Shannon entropy
of the nucleotide distribution at every position, z-scores the entropy
profile and keeps the contiguous block of high-entropy positions.  A second
pass over the input then writes every record trimmed to that block.
"""
from __future__ import annotations

import argparse
import json
import math
import os
import sys
from dataclasses import asdict, dataclass, field, replace
from itertools import islice
from statistics import mean
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

from fastx_io import FastxRecord, check_compression, open_fastx, open_output


NUCLEOTIDES = "ACGT"
BASE_INDEX: Dict[str, int] = {base: idx for idx, base in enumerate(NUCLEOTIDES)}

DEFAULT_NUM_SAMPLES = 5000
DEFAULT_ZSCORE_THRESHOLD = 0.5
ZSCORE_STD_TOLERANCE = 1e-12

RecordOpener = Callable[[str], Iterable[FastxRecord]]


# --------------------------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------------------------


class VariableRegionError(Exception):
    """Base class for failures that abort an extraction."""


class EmptySourceError(VariableRegionError):
    pass


class UnobservedPositionError(VariableRegionError):
    pass


class NoContiguousRegionError(VariableRegionError):
    pass


class DegenerateThresholdError(VariableRegionError):
    pass


class RecordTooShortError(VariableRegionError):
    pass


class SourceReopenError(VariableRegionError):
    pass


# --------------------------------------------------------------------------------------
# Data containers
# --------------------------------------------------------------------------------------


@dataclass
class ExtractionConfig:
    num_samples: int = DEFAULT_NUM_SAMPLES
    zscore_threshold: float = DEFAULT_ZSCORE_THRESHOLD

    def __post_init__(self) -> None:
        if self.num_samples < 1:
            raise ValueError(f"Number of samples must be at least 1, got {self.num_samples}")
        if math.isnan(self.zscore_threshold):
            raise ValueError("Z-score threshold must be a number")


@dataclass
class RegionSummary:
    pos_min: int
    pos_max: int
    sequence_length: int
    num_sampled: int
    zscore_threshold: float
    entropy_mean: float
    entropy_min: float
    entropy_max: float
    contiguous: bool
    selected_positions: List[int] = field(default_factory=list)
    positional_entropy: List[float] = field(default_factory=list)
    zscores: List[float] = field(default_factory=list)

    @property
    def width(self) -> int:
        return self.pos_max - self.pos_min + 1

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class RunningStats:
    """Welford running statistics."""

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def update(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        delta2 = value - self.mean
        self.m2 += delta * delta2

    @property
    def population_variance(self) -> float:
        if self.n == 0:
            return 0.0
        return self.m2 / self.n

    @property
    def population_std(self) -> float:
        return math.sqrt(self.population_variance)


class PositionCounter:
    """Position by nucleotide count matrix over a sample of sequences.

    Rows are positions, columns are the A, C, G, T channels.  A base outside
    ACGT could be any nucleotide and increments every channel.  Positions past
    the end of a shorter sequence are left untouched; positions past the
    matrix length are ignored.
    """

    def __init__(self, size: int) -> None:
        self.size = size
        self.matrix: List[List[int]] = [[0] * len(NUCLEOTIDES) for _ in range(size)]
        self.num_records = 0

    def add(self, sequence: str) -> None:
        for idx in range(min(self.size, len(sequence))):
            row = self.matrix[idx]
            channel = base_index(sequence[idx])
            if channel is None:
                for jdx in range(len(row)):
                    row[jdx] += 1
            else:
                row[channel] += 1
        self.num_records += 1


# --------------------------------------------------------------------------------------
# Positional entropy
# --------------------------------------------------------------------------------------


def base_index(base: str) -> Optional[int]:
    return BASE_INDEX.get(base)


def sample_positions(records: Iterable[FastxRecord], num_samples: int) -> PositionCounter:
    """Count nucleotides per position over up to ``num_samples`` records.

    The first record only fixes the sequence length and is not counted.
    """
    iterator = iter(records)
    first = next(iterator, None)
    if first is None:
        raise EmptySourceError("No records found in input")
    counter = PositionCounter(len(first.sequence))
    for record in islice(iterator, num_samples):
        counter.add(record.sequence)
    if counter.num_records == 0:
        raise EmptySourceError(
            "Input holds a single record; at least two are needed to sample positional entropy"
        )
    return counter


def position_counts(records: Iterable[FastxRecord], num_samples: int) -> List[List[int]]:
    return sample_positions(records, num_samples).matrix


def normalize_counts(matrix: Sequence[Sequence[float]]) -> List[List[float]]:
    """Divide each row by its sum so every position is a distribution."""
    probabilities: List[List[float]] = []
    for idx, row in enumerate(matrix):
        total = sum(row)
        if total == 0:
            raise UnobservedPositionError(
                f"Position {idx} was not covered by any sampled record; "
                "sampled sequences are shorter than the first record"
            )
        probabilities.append([value / total for value in row])
    return probabilities


def shannon_entropy(counts: Iterable[float]) -> float:
    """Base-2 entropy of ``counts``, independent of the order of the channels."""
    counts = sorted(value for value in counts if value != 0)
    total = math.fsum(counts)
    if total == 0:
        return 0.0
    return -math.fsum(value / total * math.log2(value / total) for value in counts)


def entropy_profile(matrix: Sequence[Sequence[float]]) -> List[float]:
    return [shannon_entropy(row) for row in normalize_counts(matrix)]


def positional_entropy(records: Iterable[FastxRecord], num_samples: int) -> List[float]:
    return entropy_profile(position_counts(records, num_samples))


# --------------------------------------------------------------------------------------
# Position selection
# --------------------------------------------------------------------------------------


def zscore(values: Sequence[float]) -> List[float]:
    """Population z-scores; NaN everywhere when the values are constant."""
    stats = RunningStats()
    for value in values:
        stats.update(value)
    std = stats.population_std
    # rounding noise between equal values is not spread
    if std <= ZSCORE_STD_TOLERANCE * max(1.0, abs(stats.mean)):
        return [math.nan] * len(values)
    return [(value - stats.mean) / std for value in values]


def select_positions(scores: Sequence[float], zscore_threshold: float) -> List[int]:
    # NaN never compares greater, so a flat profile selects nothing
    return [idx for idx, score in enumerate(scores) if score > zscore_threshold]


def select_high_entropy_positions(entropy: Sequence[float], zscore_threshold: float) -> List[int]:
    return select_positions(zscore(entropy), zscore_threshold)


def is_contiguous(positions: Sequence[int]) -> bool:
    return all(
        current == previous + 1 for previous, current in zip(positions, positions[1:])
    )


def find_longest_contiguous(positions: Sequence[int]) -> List[int]:
    """Longest run of consecutive integers in a sorted, duplicate-free sequence.

    Ties go to the run found first.
    """
    if not positions:
        return []
    best_start = best_end = run_start = positions[0]
    for previous, current in zip(positions, positions[1:]):
        if current != previous + 1:
            run_start = current
        if current - run_start > best_end - best_start:
            best_start, best_end = run_start, current
    return list(range(best_start, best_end + 1))


def border(positions: Sequence[int]) -> Tuple[int, int]:
    if not positions:
        raise DegenerateThresholdError(
            "No positions to bound; try lowering the z-score threshold"
        )
    pos_min, pos_max = min(positions), max(positions)
    if pos_min == pos_max:
        raise DegenerateThresholdError(
            f"Variable region collapses to the single position {pos_min}; "
            "try adjusting the z-score threshold"
        )
    return pos_min, pos_max


def resolve_region(positions: Sequence[int]) -> List[int]:
    if not positions:
        raise NoContiguousRegionError(
            "No positions exceed the z-score threshold; try lowering the z-score threshold"
        )
    if is_contiguous(positions):
        return list(positions)
    return find_longest_contiguous(positions)


# --------------------------------------------------------------------------------------
# Trimming
# --------------------------------------------------------------------------------------


def trim_record(record: FastxRecord, pos_min: int, pos_max: int) -> FastxRecord:
    """Slice a record to the inclusive interval ``[pos_min, pos_max]``."""
    if len(record.sequence) <= pos_max:
        raise RecordTooShortError(
            f"Record {record.identifier} has length {len(record.sequence)} "
            f"but the variable region ends at position {pos_max}"
        )
    end = pos_max + 1
    quality = record.quality[pos_min:end] if record.quality is not None else None
    return replace(record, sequence=record.sequence[pos_min:end], quality=quality)


def write_variable_region(
    records: Iterable[FastxRecord], handle: TextIO, pos_min: int, pos_max: int
) -> int:
    written = 0
    for record in records:
        handle.write(trim_record(record, pos_min, pos_max).to_fastx())
        written += 1
    return written


# --------------------------------------------------------------------------------------
# Two-pass driver
# --------------------------------------------------------------------------------------


def _close_records(records: Iterable[FastxRecord]) -> None:
    close = getattr(records, "close", None)
    if close is not None:
        close()


def detect_variable_region(
    origin: str,
    config: Optional[ExtractionConfig] = None,
    opener: RecordOpener = open_fastx,
) -> RegionSummary:
    """First pass: sample ``origin`` and locate the variable region."""
    config = config or ExtractionConfig()
    records = opener(origin)
    try:
        counter = sample_positions(records, config.num_samples)
    finally:
        _close_records(records)

    entropy = entropy_profile(counter.matrix)
    scores = zscore(entropy)
    selected = select_positions(scores, config.zscore_threshold)
    region = resolve_region(selected)
    pos_min, pos_max = border(region)
    return RegionSummary(
        pos_min=pos_min,
        pos_max=pos_max,
        sequence_length=counter.size,
        num_sampled=counter.num_records,
        zscore_threshold=config.zscore_threshold,
        entropy_mean=mean(entropy) if entropy else 0.0,
        entropy_min=min(entropy) if entropy else 0.0,
        entropy_max=max(entropy) if entropy else 0.0,
        contiguous=len(region) == len(selected),
        selected_positions=selected,
        positional_entropy=entropy,
        zscores=scores,
    )


def emit_variable_region(
    origin: str,
    output: Optional[str],
    pos_min: int,
    pos_max: int,
    opener: RecordOpener = open_fastx,
    compression_threads: Optional[int] = None,
    compression_level: Optional[int] = None,
) -> int:
    """Second pass: reopen ``origin`` and write each record trimmed to the region.

    Any failure while writing, such as a record too short for the region or
    a malformed record, aborts the run and removes the partially written
    output file.
    """
    try:
        records = opener(origin)
    except OSError as exc:
        raise SourceReopenError(f"Could not reopen {origin} for the writing pass: {exc}") from exc

    try:
        with open_output(output, compression_threads, compression_level) as handle:
            return write_variable_region(records, handle, pos_min, pos_max)
    except Exception:
        if output not in (None, "-") and os.path.exists(output):
            os.remove(output)
        raise
    finally:
        _close_records(records)


def extract_variable_region(
    origin: str,
    output: Optional[str] = None,
    config: Optional[ExtractionConfig] = None,
    opener: RecordOpener = open_fastx,
    compression_threads: Optional[int] = None,
    compression_level: Optional[int] = None,
) -> RegionSummary:
    summary = detect_variable_region(origin, config, opener)
    emit_variable_region(
        origin,
        output,
        summary.pos_min,
        summary.pos_max,
        opener=opener,
        compression_threads=compression_threads,
        compression_level=compression_level,
    )
    return summary


# --------------------------------------------------------------------------------------
# Reporting
# --------------------------------------------------------------------------------------


def report_summary(summary: RegionSummary, stream: TextIO = sys.stderr) -> None:
    print(
        f"Calculated entropy on {summary.num_sampled} records "
        f"of length {summary.sequence_length}",
        file=stream,
    )
    print(f"Average Entropy: {summary.entropy_mean:.3f}", file=stream)
    print(f"Minimum Entropy: {summary.entropy_min:.3f}", file=stream)
    print(f"Maximum Entropy: {summary.entropy_max:.3f}", file=stream)
    if not summary.contiguous:
        print(
            f"Warning: {len(summary.selected_positions)} high entropy positions are not "
            f"contiguous; using the longest contiguous run of {summary.width}",
            file=stream,
        )
    print(f"Bounds found: [{summary.pos_min}, {summary.pos_max}]", file=stream)


def write_summary_json(summary: RegionSummary, path: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(summary.to_dict(), handle, indent=2)


def print_error(message, label="", value=""):
    """Print error message and exit"""
    print(f"ERROR: {message}", file=sys.stderr)
    if label and value:
        print(f"{label}: {value}", file=sys.stderr)
    sys.exit(1)


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Trim same-length FASTA/FASTQ records to their variable region. "
            "Useful for CRISPRi/a libraries where the variable region is "
            "prefixed and suffixed by constant sequence."
        )
    )
    parser.add_argument(
        "-i", "--input", required=True, help="Input FASTA/Q (plain or gzip); read twice"
    )
    parser.add_argument(
        "-o", "--output", default=None, help="Filepath to write output to [default: stdout]"
    )
    parser.add_argument(
        "-n",
        "--num-samples",
        type=int,
        default=DEFAULT_NUM_SAMPLES,
        help="Number of records to calculate positional entropy on",
    )
    parser.add_argument(
        "-z",
        "--zscore-threshold",
        type=float,
        default=DEFAULT_ZSCORE_THRESHOLD,
        help="Z-score of positional entropy a position must exceed to be variable",
    )
    parser.add_argument(
        "-j",
        "--compression-threads",
        type=int,
        default=None,
        help="Compression threads to use for gzip output",
    )
    parser.add_argument(
        "-Z",
        "--compression-level",
        type=int,
        default=None,
        help="Compression level (1-9) to use for gzip output",
    )
    parser.add_argument(
        "--summary-json", default=None, help="Write region statistics as JSON to this path"
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Do not report statistics on stderr"
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = ExtractionConfig(args.num_samples, args.zscore_threshold)
        check_compression(args.compression_threads, args.compression_level)
        summary = detect_variable_region(args.input, config)
        if not args.quiet:
            report_summary(summary)
        if args.summary_json:
            write_summary_json(summary, args.summary_json)
        written = emit_variable_region(
            args.input,
            args.output,
            summary.pos_min,
            summary.pos_max,
            compression_threads=args.compression_threads,
            compression_level=args.compression_level,
        )
    except (VariableRegionError, OSError, ValueError) as exc:
        print_error(str(exc))
    else:
        if not args.quiet:
            print(f"Wrote {written} trimmed records", file=sys.stderr)


if __name__ == "__main__":
    main()
