#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of combibc.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import dataclasses
import enum
import logging
import os
import sys
from collections.abc import Iterable, Sequence

import numpy as np
import pandas as pd
import pysam
import scipy.io as sio
import scipy.sparse as sp
from libcombibc import ReadNameError, logs_runtime, positive_int
from version import __version__

# Feature name for records not aligned to any reference sequence, as in the SAM RNAME column
UNASSIGNED_FEATURE = "*"

# barcode -> feature index -> count
SparseCountMatrix = dict[str, dict[int, int]]


class CountMode(enum.Enum):
    PRESENCE = "presence"
    SUM = "sum"


class MatrixFormat(enum.Enum):
    TSV = "tsv"
    MTX = "mtx"


@dataclasses.dataclass(frozen=True)
class FeatureTable:
    names: tuple[str, ...]

    @classmethod
    def from_header(cls, header: pysam.AlignmentHeader) -> "FeatureTable":
        """Reference sequences in header order, followed by the unassigned feature."""
        return cls(tuple(header.references) + (UNASSIGNED_FEATURE,))

    @property
    def unassigned_index(self) -> int:
        return len(self.names) - 1

    def __len__(self):
        return len(self.names)


class FeatureCountAggregator:
    def __init__(self, mode: CountMode = CountMode.PRESENCE, log_every: int = 1_000_000):
        """
        Builds a sparse cell x feature matrix from alignments of demultiplexed reads.

        :param mode: CountMode.PRESENCE records 1 for every (barcode, feature) pair seen, no matter
            how many reads support it. CountMode.SUM counts the records instead.
        :param log_every: Log progress every this many records
        """
        self.mode = mode
        self.log_every = log_every
        self.logger = logging.getLogger("CountFeatures")

    @staticmethod
    def barcode_from_name(query_name: str | None) -> str:
        """
        :param query_name: Read name of the form <barcode>_<original name>
        :return: The barcode prefix
        :raises ReadNameError: if the name is missing or has no underscore
        """
        barcode, sep, _ = (query_name or "").partition("_")
        if not sep:
            raise ReadNameError(
                f"Read name {query_name!r} does not start with a <barcode>_ prefix"
            )
        return barcode

    @staticmethod
    def feature_index(record: pysam.AlignedSegment, features: FeatureTable) -> int:
        if record.is_unmapped or record.reference_id < 0:
            return features.unassigned_index
        return record.reference_id

    def aggregate(
        self,
        records: Iterable[pysam.AlignedSegment],
        header: pysam.AlignmentHeader,
    ) -> tuple[SparseCountMatrix, FeatureTable]:
        """
        Assigns each record to the cell in its read name and the reference sequence it aligned to.
        No mapping quality or flag filtering is applied.
        :param records: Alignment records, in any order
        :param header: Alignment header providing the ordered reference sequence names
        :return: The sparse count matrix and its column labels
        """
        features = FeatureTable.from_header(header)
        self.logger.info("Counting over %d features", len(features))
        matrix: SparseCountMatrix = {}
        n_records = 0
        for n_records, record in enumerate(records, 1):
            barcode = self.barcode_from_name(record.query_name)
            feature = self.feature_index(record, features)
            row = matrix.setdefault(barcode, {})
            if self.mode is CountMode.SUM:
                row[feature] = row.get(feature, 0) + 1
            else:
                row[feature] = 1
            if n_records % self.log_every == 0:
                self.logger.info("Processed %d records...", n_records)
        self.logger.info(
            "Counted %d records over %d barcodes", n_records, len(matrix)
        )
        return matrix, features

    def count_alignments(
        self, filename: str | os.PathLike, threads: int = 1
    ) -> tuple[SparseCountMatrix, FeatureTable]:
        """
        Reads a SAM/BAM/CRAM file and aggregates its records, see aggregate.
        :param filename: Path to the alignment file
        :param threads: Number of decompression threads
        """
        with pysam.AlignmentFile(
            str(filename), threads=threads, check_sq=False
        ) as alnfile:
            return self.aggregate(alnfile, alnfile.header)


class SparseMatrixWriter:
    MATRIX_FILE = "matrix.mtx"
    BARCODES_FILE = "barcodes.tsv"
    FEATURES_FILE = "features.tsv"
    MATRIX_COLUMNS = ["cell", "feature", "count"]

    def __init__(self, matrix_format: MatrixFormat = MatrixFormat.TSV):
        self.matrix_format = matrix_format

    @staticmethod
    def to_triples(
        matrix: SparseCountMatrix,
        barcodes_in_row_order: Sequence[str],
        features: FeatureTable,
    ) -> pd.DataFrame:
        """
        Flattens the matrix to 1-based (cell, feature, count) triples, rows in the given order
        and features ascending within a row.
        """
        if len(barcodes_in_row_order) != len(matrix) or set(
            barcodes_in_row_order
        ) != set(matrix):
            raise ValueError("Row order must list every barcode of the matrix exactly once")
        triples = []
        for cell, barcode in enumerate(barcodes_in_row_order, 1):
            for feature, count in sorted(matrix[barcode].items()):
                if not 0 <= feature < len(features):
                    raise ValueError(
                        f"Feature index {feature} of barcode {barcode} is outside the feature table"
                    )
                triples.append((cell, feature + 1, count))
        return pd.DataFrame(triples, columns=SparseMatrixWriter.MATRIX_COLUMNS, dtype=int)

    @logs_runtime
    def write(
        self,
        output_dir: str | os.PathLike,
        matrix: SparseCountMatrix,
        barcodes_in_row_order: Sequence[str],
        features: FeatureTable,
    ):
        """
        Exports the counts matrix to the specified directory.
        Writes the barcodes to barcodes.tsv, feature names to features.tsv,
        and the counts in sparse coordinate format to matrix.mtx. Row and column
        indices are 1-based line numbers into barcodes.tsv and features.tsv.
        :param output_dir: Path to output directory, created if needed
        :param matrix: Counts from FeatureCountAggregator
        :param barcodes_in_row_order: The barcodes of the matrix in the order to write them
        :param features: Column labels
        """
        triples = self.to_triples(matrix, barcodes_in_row_order, features)
        os.makedirs(output_dir, exist_ok=True)
        matrix_path = os.path.join(output_dir, self.MATRIX_FILE)
        if self.matrix_format is MatrixFormat.MTX:
            sio.mmwrite(
                matrix_path,
                sp.coo_matrix(
                    (
                        triples["count"].to_numpy(),
                        (
                            triples["cell"].to_numpy() - 1,
                            triples["feature"].to_numpy() - 1,
                        ),
                    ),
                    shape=(len(barcodes_in_row_order), len(features)),
                    dtype=np.int64,
                ),
                field="integer",
            )
        else:
            triples.to_csv(matrix_path, sep="\t", index=False)
        pd.Series(barcodes_in_row_order, dtype=str).to_csv(
            os.path.join(output_dir, self.BARCODES_FILE),
            sep="\t",
            index=False,
            header=False,
        )
        pd.Series(features.names, dtype=str).to_csv(
            os.path.join(output_dir, self.FEATURES_FILE),
            sep="\t",
            index=False,
            header=False,
        )


class CLI(argparse.Namespace):
    alignments: str
    outdir: str
    cpus: int = 1
    count_mode: str = CountMode.PRESENCE.value
    matrix_format: str = MatrixFormat.TSV.value
    debug: bool = False

    _parser = argparse.ArgumentParser(
        prog="combibc bam-to-count",
        description="Count aligned reads per cell barcode and reference sequence. "
        f"Version {__version__}",
    )
    _parser.add_argument(
        "alignments",
        help="SAM/BAM/CRAM file of reads named <barcode>_<read name>",
    )
    _parser.add_argument("outdir", help="Output directory")
    _parser.add_argument(
        "--cpus",
        type=positive_int,
        default=1,
        help="Number of threads for BAM IO (default: %(default)d)",
    )
    _parser.add_argument(
        "--count-mode",
        choices=[x.value for x in CountMode],
        default=CountMode.PRESENCE.value,
        help="presence: 1 per barcode and feature seen; sum: number of records "
        "(default: %(default)s)",
    )
    _parser.add_argument(
        "--matrix-format",
        choices=[x.value for x in MatrixFormat],
        default=MatrixFormat.TSV.value,
        help="tsv: cell/feature/count table with header; mtx: MatrixMarket coordinate "
        "(default: %(default)s)",
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
        logger = logging.getLogger("CountFeatures")
        try:
            aggregator = FeatureCountAggregator(CountMode(self.count_mode))
            matrix, features = aggregator.count_alignments(
                self.alignments, threads=self.cpus
            )
            SparseMatrixWriter(MatrixFormat(self.matrix_format)).write(
                self.outdir, matrix, sorted(matrix), features
            )
        except Exception:
            logger.critical("Aborting", exc_info=True)
            sys.exit(1)


if __name__ == "__main__":
    CLI().main()
