#!/usr/bin/env python3

"""
Generate synthetic guide-library FASTA/FASTQ files for testing
Each record is a constant prefix, a random guide and a constant suffix
"""

import argparse
import gzip
import random
from pathlib import Path

# U6 promoter tail and the start of the sgRNA scaffold
DEFAULT_PREFIX = "TATCTTGTGGAAAGGACGAAACACCG"
DEFAULT_SUFFIX = "GTTTTAGAGCTAGAAATAGCAAGTT"
DEFAULT_GUIDE_LENGTH = 20

BASES = ['A', 'C', 'G', 'T']


def random_guide(length, rng):
    """Return a uniformly random guide sequence"""
    return ''.join(rng.choice(BASES) for _ in range(length))


def introduce_errors(seq, error_rate, rng):
    """Introduce random sequencing errors"""
    seq_list = list(seq)

    for i in range(len(seq_list)):
        if rng.random() < error_rate:
            # Choose different base
            new_bases = [b for b in BASES if b != seq_list[i]]
            seq_list[i] = rng.choice(new_bases)

    return ''.join(seq_list)


def generate_quality_scores(length, rng, min_qual=20, max_qual=40):
    """Generate random quality scores in FASTQ format"""
    # Quality scores: 33 offset, so chr(33+20) = '5', chr(33+40) = 'I'
    return ''.join(chr(33 + rng.randint(min_qual, max_qual)) for _ in range(length))


def generate_library(
    output_path,
    num_records=1000,
    prefix=DEFAULT_PREFIX,
    guide_length=DEFAULT_GUIDE_LENGTH,
    suffix=DEFAULT_SUFFIX,
    fmt="fastq",
    error_rate=0.0,
    seed=None,
):
    """Write a library of prefix + guide + suffix records.

    Returns the inclusive (start, end) positions of the guide.
    """
    if fmt not in ("fasta", "fastq"):
        raise ValueError(f"Unknown format: {fmt}")

    rng = random.Random(seed)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    opener = gzip.open if output_path.name.endswith(".gz") else open
    with opener(output_path, 'wt') as f:

        for i in range(num_records):
            seq = prefix + random_guide(guide_length, rng) + suffix
            seq = introduce_errors(seq, error_rate, rng)
            read_id = f"guide_{i+1:06d}"

            if fmt == "fastq":
                f.write(f"@{read_id}\n")
                f.write(f"{seq}\n")
                f.write("+\n")
                f.write(f"{generate_quality_scores(len(seq), rng)}\n")
            else:
                f.write(f">{read_id}\n")
                f.write(f"{seq}\n")

    return len(prefix), len(prefix) + guide_length - 1


def main():
    parser = argparse.ArgumentParser(description="Generate a synthetic guide library")
    parser.add_argument("--output", default="tests/smoke/library.fq.gz",
                       help="Output FASTA/FASTQ path (.gz to compress)")
    parser.add_argument("--num-records", type=int, default=1000,
                       help="Number of records to generate")
    parser.add_argument("--prefix", default=DEFAULT_PREFIX,
                       help="Constant sequence before the guide")
    parser.add_argument("--suffix", default=DEFAULT_SUFFIX,
                       help="Constant sequence after the guide")
    parser.add_argument("--guide-length", type=int, default=DEFAULT_GUIDE_LENGTH,
                       help="Guide length")
    parser.add_argument("--format", dest="fmt", choices=["fasta", "fastq"], default="fastq",
                       help="Record format")
    parser.add_argument("--error-rate", type=float, default=0.0,
                       help="Per-base substitution rate")
    parser.add_argument("--seed", type=int, default=None,
                       help="Random seed")

    args = parser.parse_args()

    start, end = generate_library(
        args.output,
        args.num_records,
        args.prefix,
        args.guide_length,
        args.suffix,
        args.fmt,
        args.error_rate,
        args.seed,
    )

    print(f"Generated {args.num_records} records: {args.output}")
    print(f"  - guide positions [{start}, {end}]")

if __name__ == "__main__":
    main()
