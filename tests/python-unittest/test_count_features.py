import os
import pathlib
import sys
import tempfile
import unittest

import pandas as pd
import pysam
import scipy.io as sio

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import combibc
import count_features
from libcombibc import ReadNameError

CELL_A = "AAAAAAAA.ACGTACGT.AACCGGTT.GATTACAG"
CELL_B = "CCCCCCCC.TGCATGCA.TTGGCCAA.CTAATGTC"


class CountFeaturesTest(unittest.TestCase):
    def setUp(self):
        self.header = pysam.AlignmentHeader.from_dict(
            {
                "HD": {"VN": "1.6", "SO": "unsorted"},
                "SQ": [
                    {"SN": "geneX", "LN": 1000},
                    {"SN": "geneY", "LN": 1000},
                ],
            }
        )
        self.records = [
            self.make_record(f"{CELL_A}_read1", 0),
            self.make_record(f"{CELL_A}_read2", 0),
            self.make_record(f"{CELL_A}_read3", -1),
            self.make_record(f"{CELL_B}_read4", 1),
        ]
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def make_record(self, name, reference_id):
        record = pysam.AlignedSegment(self.header)
        record.query_name = name
        record.query_sequence = "ACGTACGTAC"
        record.query_qualities = pysam.qualitystring_to_array("FFFFFFFFFF")
        if reference_id < 0:
            record.flag = 4
        else:
            record.reference_id = reference_id
            record.reference_start = 100
            record.cigarstring = "10M"
            record.mapping_quality = 255
        return record

    def path(self, name):
        return os.path.join(self.tmpdir.name, name)

    def write_sam(self, records):
        filename = self.path("aligned.sam")
        with pysam.AlignmentFile(filename, "w", header=self.header) as samfile:
            for record in records:
                samfile.write(record)
        return filename

    def test_feature_table(self):
        features = count_features.FeatureTable.from_header(self.header)
        self.assertEqual(features.names, ("geneX", "geneY", "*"))
        self.assertEqual(features.unassigned_index, 2)
        self.assertEqual(len(features), 3)

    def test_barcode_from_name(self):
        self.assertEqual(
            count_features.FeatureCountAggregator.barcode_from_name(f"{CELL_A}_r_1"),
            CELL_A,
        )
        with self.assertRaises(ReadNameError):
            count_features.FeatureCountAggregator.barcode_from_name("read1")
        with self.assertRaises(ReadNameError):
            count_features.FeatureCountAggregator.barcode_from_name(None)

    def test_aggregate_unnamed_record(self):
        record = pysam.AlignedSegment(self.header)
        record.flag = 4
        self.assertIsNone(record.query_name)
        with self.assertRaises(ReadNameError):
            count_features.FeatureCountAggregator().aggregate([record], self.header)

    def test_aggregate_presence(self):
        matrix, features = count_features.FeatureCountAggregator().aggregate(
            self.records, self.header
        )
        self.assertEqual(matrix, {CELL_A: {0: 1, 2: 1}, CELL_B: {1: 1}})
        self.assertEqual(features.names[-1], count_features.UNASSIGNED_FEATURE)

    def test_aggregate_sum(self):
        matrix, _ = count_features.FeatureCountAggregator(
            count_features.CountMode.SUM
        ).aggregate(self.records, self.header)
        self.assertEqual(matrix, {CELL_A: {0: 2, 2: 1}, CELL_B: {1: 1}})

    def test_aggregate_bad_name(self):
        with self.assertRaises(ReadNameError):
            count_features.FeatureCountAggregator().aggregate(
                self.records + [self.make_record("noprefix", 0)], self.header
            )

    def test_aggregate_empty(self):
        matrix, features = count_features.FeatureCountAggregator().aggregate(
            [], self.header
        )
        self.assertEqual(matrix, {})
        self.assertEqual(len(features), 3)

    def test_count_alignments(self):
        matrix, features = count_features.FeatureCountAggregator().count_alignments(
            self.write_sam(self.records)
        )
        self.assertEqual(matrix, {CELL_A: {0: 1, 2: 1}, CELL_B: {1: 1}})
        self.assertEqual(features.names, ("geneX", "geneY", "*"))

    def test_to_triples(self):
        features = count_features.FeatureTable(("geneX", "geneY", "*"))
        matrix = {CELL_A: {2: 1, 0: 5}, CELL_B: {1: 1}}
        triples = count_features.SparseMatrixWriter.to_triples(
            matrix, [CELL_B, CELL_A], features
        )
        self.assertEqual(
            triples.values.tolist(), [[1, 2, 1], [2, 1, 5], [2, 3, 1]]
        )
        with self.assertRaises(ValueError):
            count_features.SparseMatrixWriter.to_triples(matrix, [CELL_A], features)
        with self.assertRaises(ValueError):
            count_features.SparseMatrixWriter.to_triples(
                matrix, [CELL_A, CELL_A], features
            )
        with self.assertRaises(ValueError):
            count_features.SparseMatrixWriter.to_triples(
                {CELL_A: {3: 1}}, [CELL_A], features
            )

    def test_write_tsv(self):
        matrix, features = count_features.FeatureCountAggregator().aggregate(
            self.records, self.header
        )
        outdir = self.path("counts")
        count_features.SparseMatrixWriter().write(
            outdir, matrix, sorted(matrix), features
        )
        with open(os.path.join(outdir, "barcodes.tsv")) as fp:
            barcodes = fp.read().splitlines()
        with open(os.path.join(outdir, "features.tsv")) as fp:
            feature_names = fp.read().splitlines()
        triples = pd.read_csv(os.path.join(outdir, "matrix.mtx"), sep="\t")
        self.assertEqual(barcodes, [CELL_A, CELL_B])
        self.assertEqual(feature_names, ["geneX", "geneY", "*"])
        self.assertEqual(triples.columns.tolist(), ["cell", "feature", "count"])
        self.assertEqual(triples.values.tolist(), [[1, 1, 1], [1, 3, 1], [2, 2, 1]])
        self.assertTrue(triples["cell"].between(1, len(barcodes)).all())
        self.assertTrue(triples["feature"].between(1, len(feature_names)).all())

    def test_write_mtx(self):
        matrix, features = count_features.FeatureCountAggregator(
            count_features.CountMode.SUM
        ).aggregate(self.records, self.header)
        outdir = self.path("counts")
        count_features.SparseMatrixWriter(count_features.MatrixFormat.MTX).write(
            outdir, matrix, sorted(matrix), features
        )
        counts = sio.mmread(os.path.join(outdir, "matrix.mtx")).toarray()
        self.assertEqual(counts.tolist(), [[2, 0, 1], [0, 1, 0]])

    def test_write_empty(self):
        features = count_features.FeatureTable(("geneX", "*"))
        outdir = self.path("counts")
        count_features.SparseMatrixWriter().write(outdir, {}, [], features)
        with open(os.path.join(outdir, "matrix.mtx")) as fp:
            self.assertEqual(fp.read().splitlines(), ["cell\tfeature\tcount"])
        with open(os.path.join(outdir, "features.tsv")) as fp:
            self.assertEqual(fp.read().splitlines(), ["geneX", "*"])

    def test_write_output_is_a_file(self):
        outdir = self.path("counts")
        with open(outdir, "w"):
            pass
        features = count_features.FeatureTable(("geneX", "*"))
        with self.assertRaises(OSError):
            count_features.SparseMatrixWriter().write(
                outdir, {CELL_A: {0: 1}}, [CELL_A], features
            )

    def test_cli(self):
        samfile = self.write_sam(self.records)
        outdir = self.path("counts")
        combibc.CLI(
            ["bam-to-count", samfile, outdir, "--count-mode", "sum"]
        ).main()
        triples = pd.read_csv(os.path.join(outdir, "matrix.mtx"), sep="\t")
        self.assertEqual(triples.values.tolist(), [[1, 1, 2], [1, 3, 1], [2, 2, 1]])

    def test_cli_bad_read_name(self):
        samfile = self.write_sam(self.records + [self.make_record("noprefix", 1)])
        cli = count_features.CLI([samfile, self.path("counts")])
        with self.assertLogs("CountFeatures", level="CRITICAL"):
            with self.assertRaises(SystemExit) as cm:
                cli.main()
        self.assertEqual(cm.exception.code, 1)
        self.assertFalse(os.path.exists(self.path("counts")))


if __name__ == "__main__":
    unittest.main()
