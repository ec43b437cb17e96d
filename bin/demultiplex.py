#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of combibc.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import collections
import contextlib
import dataclasses
import enum
import itertools
import json
import logging
import os
import sys
import typing
from collections.abc import Iterator

import pandas as pd
import pysam
import xopen
from barcodes import (
    BARCODE_REGION_LENGTH,
    MIN_ROUND_SCORE,
    N_ROUNDS,
    BarcodeFailReason,
    CombinatorialBarcodeScheme,
    CorrectedBarcode,
)
from libcombibc import OutputError, ReadPairingError, logs_runtime, positive_int
from version import __version__

PathType = str | os.PathLike


# Dataclass for tracking demultiplexing statistics
@dataclasses.dataclass(slots=True)
class ReadCounts:
    read_count: int = 0
    written_count: int = 0
    fail_counts: dict[str, int] = dataclasses.field(
        default_factory=lambda: {reason.name: 0 for reason in BarcodeFailReason}
    )
    round_fail_counts: list[int] = dataclasses.field(
        default_factory=lambda: [0] * N_ROUNDS
    )


class DemuxState(enum.Enum):
    PROCESSING = "processing"
    FINALIZED = "finalized"


@dataclasses.dataclass(slots=True)
class ReadPair:
    r1_name: str
    r1_seq: str
    r1_qual: str
    r2_name: str
    r2_seq: str
    r2_qual: str


class FastqWriter:
    __slots__ = ("outfq", "num_written")

    def __init__(self, filename: PathType, threads: int = 1):
        """
        Gzip-compressed four-line FASTQ sink, whatever the file extension. With threads > 0
        compression runs in a separate pigz/igzip process.
        """
        self.outfq = xopen.xopen(filename, "w", threads=threads, format="gz")
        self.num_written = 0

    def write(self, name: str, seq: str, qual: str):
        self.outfq.write(f"@{name}\n{seq}\n+\n{qual}\n")
        self.num_written += 1

    def close(self):
        self.outfq.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@logs_runtime
def write_histogram(histogram: typing.Mapping[str, int], filename: PathType):
    """
    Writes read pair counts per cell barcode as a two-column TSV with a header.
    Rows are not sorted.
    """
    pd.Series(histogram, name="count", dtype=int).rename_axis("barcode").to_csv(
        filename, sep="\t"
    )


class ReadDemultiplexer:
    def __init__(
        self,
        scheme: CombinatorialBarcodeScheme,
        out_r1: PathType,
        out_r2: PathType,
        histogram: PathType,
        *,
        cpus: int = 1,
        max_reads: int | None = None,
        log_every: int = 1_000_000,
    ):
        """Initialize a ReadDemultiplexer instance.

        :param scheme: Barcode whitelists and read layout
        :param out_r1: Path of the corrected R1 FASTQ, written gzip-compressed
        :param out_r2: Path of the corrected R2 FASTQ, with the barcode region trimmed off
        :param histogram: Path of the barcode histogram TSV
        :param cpus: Number of gzip compression threads per FASTQ output
        :param max_reads: Stop after this many read pairs. None (the default) reads everything.
        :param log_every: Log progress every this many read pairs
        """
        self.scheme = scheme
        self.out_r1 = out_r1
        self.out_r2 = out_r2
        self.histogram_path = histogram
        self.cpus = cpus
        self.max_reads = max_reads
        self.log_every = log_every

        self.histogram: collections.Counter[str] = collections.Counter()
        self.stats = ReadCounts()
        self.state = DemuxState.PROCESSING

        self.exit_stack = contextlib.ExitStack()
        self.r1_writer: FastqWriter | None = None
        self.r2_writer: FastqWriter | None = None

    def __enter__(self):
        self.r1_writer = self.exit_stack.enter_context(
            FastqWriter(self.out_r1, threads=self.cpus)
        )
        self.r2_writer = self.exit_stack.enter_context(
            FastqWriter(self.out_r2, threads=self.cpus)
        )
        return self

    def __exit__(self, *e):
        self.exit_stack.__exit__(*e)

    @staticmethod
    def iter_read_pairs(r1fqname: PathType, r2fqname: PathType) -> Iterator[ReadPair]:
        """
        Iterates two FASTQ files in lockstep.
        :raises ReadPairingError: if one file runs out of records before the other
        """
        with pysam.FastxFile(str(r1fqname), persist=False) as r1fq, pysam.FastxFile(
            str(r2fqname), persist=False
        ) as r2fq:
            for i, (r1, r2) in enumerate(itertools.zip_longest(r1fq, r2fq), 1):
                if r1 is None or r2 is None:
                    raise ReadPairingError(
                        f"{r1fqname if r1 is None else r2fqname} ended at record {i}, "
                        "read files must have the same number of records"
                    )
                yield ReadPair(
                    r1.name, r1.sequence, r1.quality, r2.name, r2.sequence, r2.quality
                )

    def record_stats(self, reason: BarcodeFailReason, failed_round: int):
        self.stats.read_count += 1
        self.stats.fail_counts[reason.name] += 1
        if failed_round >= 0:
            self.stats.round_fail_counts[failed_round] += 1

    def demultiplex_read(self, rp: ReadPair) -> CorrectedBarcode | None:
        """
        Corrects the cell barcode of a read pair and, if it passes, writes both reads
        renamed to <barcode>_<name>. R2 loses its barcode region.
        :param rp: A ReadPair, i.e. from iter_read_pairs
        :return: The corrected barcode, or None if the pair was dropped
        """
        if self.state is not DemuxState.PROCESSING:
            raise RuntimeError("Cannot demultiplex reads after finalize()")
        barcode, reason, failed_round = self.scheme.match_read(rp.r2_seq.upper())
        self.record_stats(reason, failed_round)
        if barcode is None:
            return None
        name = barcode.name
        self.histogram[name] += 1
        self.r1_writer.write(f"{name}_{rp.r1_name}", rp.r1_seq, rp.r1_qual)
        start = min(BARCODE_REGION_LENGTH, len(rp.r2_seq))
        self.r2_writer.write(
            f"{name}_{rp.r2_name}", rp.r2_seq[start:], rp.r2_qual[start:]
        )
        self.stats.written_count += 1
        return barcode

    def finalize(self):
        """
        Flushes and closes both FASTQ outputs, then writes the histogram. Only valid once.
        :raises OutputError: if an output stream could not be closed
        """
        if self.state is DemuxState.FINALIZED:
            raise RuntimeError("Demultiplexer is already finalized")
        self.state = DemuxState.FINALIZED
        try:
            self.exit_stack.close()
        except OSError as e:
            raise OutputError(f"Could not finish writing FASTQ output: {e}") from e
        write_histogram(self.histogram, self.histogram_path)

    def demultiplex_experiment(self, r1fq: PathType, r2fq: PathType) -> ReadCounts:
        """
        Ingests a pair of FASTQ files, writes the read pairs with a correctable barcode and
        the barcode histogram.
        :param r1fq: File containing R1 reads
        :param r2fq: File containing R2 reads (barcode read)
        :return: Demultiplexing statistics
        """
        logger = logging.getLogger("Demultiplex")
        logger.info("Begin")
        n_pairs = 0
        read_pairs = itertools.islice(self.iter_read_pairs(r1fq, r2fq), self.max_reads)
        for i, rp in enumerate(read_pairs, 1):
            self.demultiplex_read(rp)
            n_pairs = i
            if i % self.log_every == 0:
                logger.info("Processed %d read pairs...", i)
        if n_pairs == self.max_reads:
            logger.info("Stopping after %d read pairs", self.max_reads)
        self.finalize()
        logger.info(
            "End, processed %d read pairs, wrote %d (%d distinct barcodes)",
            n_pairs,
            self.stats.written_count,
            len(self.histogram),
        )
        for reason, count in self.stats.fail_counts.items():
            logger.debug("%s: %d", reason, count)
        return self.stats


class CLI(argparse.Namespace):
    R1: str
    R2: str
    barcodes: str
    out_R1: str
    out_R2: str
    histogram: str
    cpus: int = 1
    min_round_score: int = MIN_ROUND_SCORE
    min_total_score: int | None = None
    max_reads: int | None = None
    stats: str | None = None
    debug: bool = False

    _parser = argparse.ArgumentParser(
        prog="combibc to-fastq",
        description="Identify combinatorial cell barcodes and write corrected FASTQ pairs. "
        f"Version {__version__}",
    )
    _parser.add_argument("R1", help="Path to read-1 fastq file")
    _parser.add_argument("R2", help="Path to read-2 fastq file (starts with the barcode)")
    _parser.add_argument(
        "barcodes",
        help="TSV file of round position (1-4), well name and barcode sequence",
    )
    _parser.add_argument("out_R1", help="Output read-1 fastq file, gzip-compressed")
    _parser.add_argument("out_R2", help="Output read-2 fastq file, gzip-compressed")
    _parser.add_argument("histogram", help="Output TSV of read pairs per barcode")
    _parser.add_argument(
        "--cpus",
        type=positive_int,
        default=1,
        help="Number of compression threads per output file (default: %(default)d)",
    )
    _parser.add_argument(
        "--min-round-score",
        type=int,
        default=MIN_ROUND_SCORE,
        help="Minimum number of bases matching the whitelist in each round (default: %(default)d)",
    )
    _parser.add_argument(
        "--min-total-score",
        type=int,
        default=None,
        help="Minimum number of matching bases summed over all rounds "
        "(default: barcode length - 1 per round)",
    )
    _parser.add_argument(
        "--max-reads",
        type=positive_int,
        default=None,
        help="Stop after this many read pairs (default: all)",
    )
    _parser.add_argument(
        "--stats", default=None, help="Write demultiplexing statistics to this JSON file"
    )
    _parser.add_argument(
        "--debug", action="store_true", default=False, help="Increase logging verbosity"
    )

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.DEBUG if self.debug else logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        logger = logging.getLogger("Demultiplex")
        try:
            scheme = CombinatorialBarcodeScheme.load(
                self.barcodes,
                min_round_score=self.min_round_score,
                min_total_score=self.min_total_score,
            )
            with ReadDemultiplexer(
                scheme,
                self.out_R1,
                self.out_R2,
                self.histogram,
                cpus=self.cpus,
                max_reads=self.max_reads,
            ) as demultiplexer:
                stats = demultiplexer.demultiplex_experiment(self.R1, self.R2)
            if self.stats is not None:
                with open(self.stats, "w") as ofp:
                    json.dump(dataclasses.asdict(stats), ofp, indent=2)
        except Exception:
            logger.critical("Aborting", exc_info=True)
            sys.exit(1)


if __name__ == "__main__":
    CLI().main()
