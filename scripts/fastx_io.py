#!/usr/bin/env python3
"""
FASTA/FASTQ record streaming and output stream selection.

Records are read through pysam so that plain and gzip-compressed inputs are
handled transparently.  Output goes to stdout, a plain file, or a gzip file;
gzip output can be compressed block-wise on a thread pool.
"""
from __future__ import annotations

import gzip
import sys
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Deque, Iterator, List, Optional, TextIO, Tuple

import pysam


DEFAULT_COMPRESSION_LEVEL = 6
DEFAULT_BLOCK_SIZE = 1 << 20

FASTA = "fasta"
FASTQ = "fastq"


# --------------------------------------------------------------------------------------
# Records
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class FastxRecord:
    """One FASTA or FASTQ record, tagged by ``format``.

    ``separator`` is the FASTQ ``+`` line.  pysam does not expose that line,
    so records read with ``open_fastx`` always carry a bare ``+`` and any
    text after it in the input (``+r0``) is not reproduced on output.
    """

    identifier: str
    sequence: str
    quality: Optional[str] = None
    format: str = FASTA  # 'fasta' or 'fastq'
    separator: str = "+"

    def __post_init__(self) -> None:
        if self.format == FASTQ:
            if self.quality is None:
                raise ValueError(f"FASTQ record {self.identifier} has no quality string")
            if len(self.quality) != len(self.sequence):
                raise ValueError(
                    f"Quality length ({len(self.quality)}) does not match sequence "
                    f"length ({len(self.sequence)}) for record {self.identifier}"
                )
        elif self.format == FASTA:
            if self.quality is not None:
                raise ValueError(f"FASTA record {self.identifier} carries a quality string")
        else:
            raise ValueError(f"Unknown record format: {self.format}")

    @classmethod
    def from_pysam(cls, entry: pysam.FastxRecord) -> "FastxRecord":
        identifier = entry.name
        if entry.comment:
            identifier = f"{identifier} {entry.comment}"
        if entry.quality is None:
            return cls(identifier, entry.sequence)
        return cls(identifier, entry.sequence, entry.quality, FASTQ)

    def to_fastx(self) -> str:
        if self.format == FASTQ:
            return f"@{self.identifier}\n{self.sequence}\n{self.separator}\n{self.quality}\n"
        return f">{self.identifier}\n{self.sequence}\n"


def open_fastx(origin) -> Iterator[FastxRecord]:
    """Open ``origin`` and stream its records.

    The file is opened eagerly so that a missing or unreadable path raises
    ``OSError`` here rather than on the first iteration.  Each call returns an
    independent iterator starting at the first record.
    """
    handle = pysam.FastxFile(str(origin))
    return _iter_records(handle)


def _iter_records(handle: pysam.FastxFile) -> Iterator[FastxRecord]:
    with handle:
        for entry in handle:
            yield FastxRecord.from_pysam(entry)


# --------------------------------------------------------------------------------------
# Output streams
# --------------------------------------------------------------------------------------


class ParallelGzipWriter:
    """Text writer producing a multi-member gzip file.

    Written text is buffered into blocks; each block is compressed as an
    independent gzip member on a thread pool and members are written in the
    order their blocks were filled.
    """

    def __init__(
        self,
        path: str,
        threads: int,
        level: int = DEFAULT_COMPRESSION_LEVEL,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self.path = path
        self.threads = threads
        self.level = level
        self.block_size = block_size
        self.closed = False
        self._handle = open(path, "wb")
        self._executor = ThreadPoolExecutor(max_workers=threads)
        self._pending: Deque[Future] = deque()
        self._buffer: List[bytes] = []
        self._buffered = 0
        self._members = 0

    def write(self, text: str) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        data = text.encode("utf-8")
        self._buffer.append(data)
        self._buffered += len(data)
        if self._buffered >= self.block_size:
            self._submit()
        return len(text)

    def flush(self) -> None:
        # only complete members can be flushed
        while self._pending and self._pending[0].done():
            self._drain_one()
        self._handle.flush()

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._buffer or self._members == 0:
                self._submit()
            while self._pending:
                self._drain_one()
        finally:
            self._executor.shutdown(wait=True)
            self._handle.close()
            self.closed = True

    def _submit(self) -> None:
        block = b"".join(self._buffer)
        self._buffer = []
        self._buffered = 0
        self._pending.append(self._executor.submit(gzip.compress, block, self.level))
        self._members += 1
        while len(self._pending) > self.threads * 2:
            self._drain_one()

    def _drain_one(self) -> None:
        self._handle.write(self._pending.popleft().result())

    def __enter__(self) -> "ParallelGzipWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def check_compression(
    compression_threads: Optional[int] = None,
    compression_level: Optional[int] = None,
) -> Tuple[int, int]:
    """Resolve defaults and validate gzip settings; returns (threads, level)."""
    threads = 1 if compression_threads is None else compression_threads
    level = DEFAULT_COMPRESSION_LEVEL if compression_level is None else compression_level
    if threads < 1:
        raise ValueError(f"Compression threads must be at least 1, got {threads}")
    if not 1 <= level <= 9:
        raise ValueError(f"Compression level must be between 1 and 9, got {level}")
    return threads, level


@contextmanager
def open_output(
    path: Optional[str] = None,
    compression_threads: Optional[int] = None,
    compression_level: Optional[int] = None,
) -> Iterator[TextIO]:
    """Yield a text stream for ``path``.

    ``None`` or ``"-"`` selects standard output, which is flushed but left
    open.  Paths ending in ``.gz`` are gzip-compressed.
    """
    threads, level = check_compression(compression_threads, compression_level)

    if path is None or path == "-":
        yield sys.stdout
        sys.stdout.flush()
        return

    if path.endswith(".gz"):
        if threads > 1:
            handle = ParallelGzipWriter(path, threads, level)
        else:
            handle = gzip.open(path, "wt", compresslevel=level, encoding="utf-8")
    else:
        handle = open(path, "w", encoding="utf-8")
    try:
        yield handle
    finally:
        handle.close()
