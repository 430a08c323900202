#!/usr/bin/env python3

"""
Unit tests for FASTA/FASTQ streaming and output selection
"""

import gzip
import io
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from fastx_io import FastxRecord, ParallelGzipWriter, open_fastx, open_output  # noqa: E402


class TestFastxRecord(unittest.TestCase):

    def test_fasta_serialization(self):
        record = FastxRecord("seq.0", "ACGT")
        self.assertEqual(record.to_fastx(), ">seq.0\nACGT\n")

    def test_fastq_serialization(self):
        record = FastxRecord("read1", "ACGT", "IIII", "fastq")
        self.assertEqual(record.to_fastx(), "@read1\nACGT\n+\nIIII\n")

    def test_quality_length_mismatch(self):
        with self.assertRaises(ValueError):
            FastxRecord("read1", "ACGT", "III", "fastq")

    def test_fastq_requires_quality(self):
        with self.assertRaises(ValueError):
            FastxRecord("read1", "ACGT", None, "fastq")

    def test_fasta_rejects_quality(self):
        with self.assertRaises(ValueError):
            FastxRecord("seq.0", "ACGT", "IIII")

    def test_unknown_format(self):
        with self.assertRaises(ValueError):
            FastxRecord("seq.0", "ACGT", format="genbank")


class TestOpenFastx(unittest.TestCase):

    def setUp(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up test fixtures"""
        shutil.rmtree(self.temp_dir)

    def test_read_fasta_with_comment(self):
        path = os.path.join(self.temp_dir, "in.fa")
        with open(path, 'w') as f:
            f.write(">seq.0 guide=1\nACGT\n>seq.1\nTTGA\n")

        records = list(open_fastx(path))
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].identifier, "seq.0 guide=1")
        self.assertEqual(records[0].sequence, "ACGT")
        self.assertIsNone(records[0].quality)
        self.assertEqual(records[0].format, "fasta")
        self.assertEqual(records[1].to_fastx(), ">seq.1\nTTGA\n")

    def test_read_gzipped_fastq(self):
        path = os.path.join(self.temp_dir, "in.fq.gz")
        with gzip.open(path, 'wt') as f:
            f.write("@read1\nACGT\n+\nABCD\n@read2\nGGCC\n+\nEFGH\n")

        records = list(open_fastx(path))
        self.assertEqual([r.identifier for r in records], ["read1", "read2"])
        self.assertEqual(records[1].quality, "EFGH")
        self.assertEqual(records[1].format, "fastq")

    def test_plus_line_text_is_not_kept(self):
        path = os.path.join(self.temp_dir, "in.fq")
        with open(path, 'w') as f:
            f.write("@r0\nACGT\n+r0\nABCD\n")

        records = list(open_fastx(path))
        self.assertEqual(records[0].separator, "+")
        self.assertEqual(records[0].to_fastx(), "@r0\nACGT\n+\nABCD\n")

    def test_reopen_yields_same_records(self):
        path = os.path.join(self.temp_dir, "in.fa")
        with open(path, 'w') as f:
            f.write(">a\nACGT\n>b\nCCGG\n>c\nTTTT\n")

        first = open_fastx(path)
        next(first)
        self.assertEqual(list(open_fastx(path)), list(open_fastx(path)))
        first.close()

    def test_missing_file(self):
        with self.assertRaises(OSError):
            open_fastx(os.path.join(self.temp_dir, "missing.fa"))


class TestOpenOutput(unittest.TestCase):

    def setUp(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up test fixtures"""
        shutil.rmtree(self.temp_dir)

    def test_plain_file(self):
        path = os.path.join(self.temp_dir, "out.fa")
        with open_output(path) as handle:
            handle.write(">a\nACGT\n")
        with open(path) as f:
            self.assertEqual(f.read(), ">a\nACGT\n")

    def test_gzip_file(self):
        path = os.path.join(self.temp_dir, "out.fa.gz")
        with open_output(path, compression_level=1) as handle:
            handle.write(">a\nACGT\n")
        with gzip.open(path, 'rt') as f:
            self.assertEqual(f.read(), ">a\nACGT\n")

    def test_threaded_gzip_file(self):
        path = os.path.join(self.temp_dir, "out.fa.gz")
        with open_output(path, compression_threads=4) as handle:
            self.assertIsInstance(handle, ParallelGzipWriter)
            handle.write(">a\nACGT\n")
        with gzip.open(path, 'rt') as f:
            self.assertEqual(f.read(), ">a\nACGT\n")

    def test_parallel_writer_keeps_block_order(self):
        path = os.path.join(self.temp_dir, "blocks.gz")
        lines = [f">seq.{i}\n{'ACGT' * (i % 7 + 1)}\n" for i in range(500)]
        with ParallelGzipWriter(path, threads=3, level=6, block_size=64) as writer:
            for line in lines:
                writer.write(line)
        with gzip.open(path, 'rt') as f:
            self.assertEqual(f.read(), "".join(lines))

    def test_parallel_writer_empty(self):
        path = os.path.join(self.temp_dir, "empty.gz")
        ParallelGzipWriter(path, threads=2).close()
        with gzip.open(path, 'rt') as f:
            self.assertEqual(f.read(), "")

    def test_stdout(self):
        with mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
            with open_output(None) as handle:
                handle.write(">a\nACGT\n")
            self.assertEqual(stdout.getvalue(), ">a\nACGT\n")
            self.assertFalse(stdout.closed)

    def test_invalid_settings(self):
        path = os.path.join(self.temp_dir, "out.fa.gz")
        with self.assertRaises(ValueError):
            with open_output(path, compression_level=12):
                pass
        with self.assertRaises(ValueError):
            with open_output(path, compression_threads=0):
                pass


if __name__ == "__main__":
    unittest.main()
