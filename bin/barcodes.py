"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of combibc.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

# Whitelist correction of four-round combinatorial (split-pool) cell barcodes.
#
# Read layout of the barcode read, 5' to 3':
#   [round 3: 8nt][spacer: 4nt][round 2: 8nt][spacer: 4nt][round 1: 8nt][spacer: 4nt][round 0: 8nt] ...
# Rounds are ligated in order 0..3, so the round attached last is the first one sequenced.

import dataclasses
import enum
import functools
import logging
import os
import typing
from collections.abc import Sequence

import pandas as pd
from libcombibc import BarcodeTableError, wrap_exception

N_ROUNDS = 4
BARCODE_LENGTH = 8
SPACER_LENGTH = 4
# Read offset of each round's barcode, indexed by round
ROUND_OFFSETS = tuple(
    (N_ROUNDS - 1 - i) * (BARCODE_LENGTH + SPACER_LENGTH) for i in range(N_ROUNDS)
)
BARCODE_REGION_LENGTH = max(ROUND_OFFSETS) + BARCODE_LENGTH

# Minimum number of matching bases for a single round
MIN_ROUND_SCORE = 6
# Minimum summed score over all rounds, i.e. on average at most one mismatch per round
MIN_TOTAL_SCORE = (BARCODE_LENGTH - 1) * N_ROUNDS


class RoundMatch(typing.NamedTuple):
    round_index: int
    sequence: str
    score: int


class BarcodeFailReason(enum.Enum):
    PASS = "pass"
    FAIL_READ_LENGTH = "fail_read_length"
    FAIL_ROUND_MATCH = "fail_round_match"
    FAIL_TOTAL_SCORE = "fail_total_score"


@dataclasses.dataclass(frozen=True, slots=True)
class CorrectedBarcode:
    matches: tuple[RoundMatch, ...]

    @property
    def rounds(self) -> tuple[str, ...]:
        return tuple(m.sequence for m in self.matches)

    @property
    def score(self) -> int:
        return sum(m.score for m in self.matches)

    @property
    def name(self) -> str:
        """Cell identity, the corrected rounds joined by dots in round order."""
        return ".".join(self.rounds)


class BarcodeWhitelist:
    def __init__(
        self,
        barcodes: Sequence[str],
        round_index: int = 0,
        *,
        bc_length: int | None = None,
        min_score: int = MIN_ROUND_SCORE,
    ):
        """
        Valid barcode sequences of one combinatorial round.

        :param barcodes: Barcode sequences. Order matters, ties during correction go to the earlier entry.
        :param round_index: 0-based round these barcodes belong to
        :param bc_length: Barcode length. Inferred from the barcodes if not given.
        :param min_score: Minimum number of matching positions for an inexact match to be accepted
        """
        self.round_index = round_index
        self.barcodes: list[str] = list(barcodes)
        self.barcode_set: frozenset[str] = frozenset(self.barcodes)
        if bc_length is None:
            if not self.barcodes:
                raise ValueError(
                    f"Cannot infer the barcode length of round {round_index + 1} without barcodes"
                )
            bc_length = len(self.barcodes[0])
        if any(len(barcode) != bc_length for barcode in self.barcodes):
            raise ValueError(
                f"Barcodes of round {round_index + 1} are not all {bc_length} bases long"
            )
        self.bc_length = bc_length
        self.min_score = min_score

    def __len__(self):
        return len(self.barcodes)

    @staticmethod
    def similarity(seq_a: str, seq_b: str) -> int:
        """
        Number of positions at which two sequences agree (the complement of the Hamming distance).
        """
        return sum(a == b for a, b in zip(seq_a, seq_b))

    @functools.lru_cache(4096)
    def correct(self, candidate: str) -> RoundMatch | None:
        """
        Looks up the candidate in the whitelist. If an exact match is not found, finds the
        entry sharing the most positions with it. If several entries score equally, the first
        in the whitelist is selected.

        :param candidate: Observed barcode sequence
        :return: The matched barcode and its score, or None if no entry is close enough
        """
        if not candidate:
            return None
        if candidate in self.barcode_set:
            return RoundMatch(self.round_index, candidate, self.bc_length)
        if len(candidate) != self.bc_length or not self.barcodes:
            return None
        idx, score = max(
            enumerate(
                self.similarity(candidate, barcode) for barcode in self.barcodes
            ),
            key=lambda t: t[1],
        )
        if score < self.min_score:
            return None
        return RoundMatch(self.round_index, self.barcodes[idx], score)


class CombinatorialBarcodeScheme:
    def __init__(
        self,
        whitelists: Sequence[BarcodeWhitelist],
        min_total_score: int | None = None,
    ):
        """
        Four whitelists, one per round, and the layout of the barcode read.

        :param whitelists: Whitelists ordered by round index
        :param min_total_score: Minimum summed score over all rounds. Defaults to one mismatch per round.
        """
        if len(whitelists) != N_ROUNDS:
            raise ValueError(
                f"Expected {N_ROUNDS} barcode rounds, got {len(whitelists)}"
            )
        for i, whitelist in enumerate(whitelists):
            if whitelist.round_index != i:
                raise ValueError(
                    f"Whitelist for round {whitelist.round_index + 1} given in position {i + 1}"
                )
            if whitelist.bc_length != BARCODE_LENGTH:
                raise ValueError(
                    f"Round {i + 1} barcodes are {whitelist.bc_length} bases long, expected {BARCODE_LENGTH}"
                )
        self.whitelists: tuple[BarcodeWhitelist, ...] = tuple(whitelists)
        if min_total_score is None:
            min_total_score = sum(w.bc_length - 1 for w in self.whitelists)
        self.min_total_score = min_total_score

    @classmethod
    @wrap_exception((ValueError, KeyError, IndexError), BarcodeTableError)
    def load(
        cls,
        path: str | os.PathLike | typing.TextIO,
        *,
        min_round_score: int = MIN_ROUND_SCORE,
        min_total_score: int | None = None,
    ) -> "CombinatorialBarcodeScheme":
        """
        Reads the barcode reference table, one whitelist entry per row:
            round_position (1-based), well label, barcode sequence
        Columns are separated by tabs or spaces. A header line, if present, is skipped.

        :param path: Path or handle to the barcode table
        :param min_round_score: Minimum per-round score, see BarcodeWhitelist
        :param min_total_score: Minimum summed score, see CombinatorialBarcodeScheme
        :return: The loaded scheme
        """
        logger = logging.getLogger("BarcodeTable")
        table = pd.read_csv(
            path,
            sep=r"\s+",
            header=None,
            names=["round", "well", "seq"],
            usecols=range(3),
            dtype=str,
        )
        if not table.empty and not str(table.at[0, "round"]).isdigit():
            table = table.iloc[1:]
        if table.isna().to_numpy().any():
            raise BarcodeTableError("Barcode table has rows with fewer than 3 columns")
        rounds = table["round"].astype(int)
        out_of_range = table[(rounds < 1) | (rounds > N_ROUNDS)]
        if not out_of_range.empty:
            raise BarcodeTableError(
                f"Round position must be between 1 and {N_ROUNDS}, "
                f"found {', '.join(out_of_range['round'].unique())}"
            )
        seqs = table["seq"].str.upper()
        whitelists = []
        for i in range(N_ROUNDS):
            round_seqs = seqs[rounds == i + 1].to_list()
            if not round_seqs:
                raise BarcodeTableError(f"No barcodes defined for round {i + 1}")
            logger.debug("Round %d: %d barcodes", i + 1, len(round_seqs))
            whitelists.append(
                BarcodeWhitelist(round_seqs, i, min_score=min_round_score)
            )
        logger.info(
            "Loaded %d barcodes over %d rounds", sum(map(len, whitelists)), N_ROUNDS
        )
        return cls(whitelists, min_total_score=min_total_score)

    @staticmethod
    def extract(read_sequence: str) -> tuple[str, ...] | None:
        """
        Slices the per-round barcodes out of the read at their fixed offsets. Spacers are not checked.

        :param read_sequence: Sequence of the barcode read
        :return: Barcode windows indexed by round, or None if the read is too short
        """
        if len(read_sequence) < BARCODE_REGION_LENGTH:
            return None
        return tuple(
            read_sequence[offset : offset + BARCODE_LENGTH] for offset in ROUND_OFFSETS
        )

    def match_read(
        self, read_sequence: str
    ) -> tuple[CorrectedBarcode | None, BarcodeFailReason, int]:
        """
        Extracts and corrects all rounds of the cell barcode.

        :param read_sequence: Sequence of the barcode read
        :return: A 3-tuple of the corrected barcode (None on failure), the outcome,
            and the index of the first round that failed to match (-1 if none did).
        """
        windows = self.extract(read_sequence)
        if windows is None:
            return None, BarcodeFailReason.FAIL_READ_LENGTH, -1
        matches = []
        for i, (whitelist, window) in enumerate(zip(self.whitelists, windows)):
            match = whitelist.correct(window)
            if match is None:
                return None, BarcodeFailReason.FAIL_ROUND_MATCH, i
            matches.append(match)
        barcode = CorrectedBarcode(tuple(matches))
        if barcode.score < self.min_total_score:
            return None, BarcodeFailReason.FAIL_TOTAL_SCORE, -1
        return barcode, BarcodeFailReason.PASS, -1

    def extract_and_correct(
        self, read_sequence: str
    ) -> tuple[str, ...] | None:
        """
        :param read_sequence: Sequence of the barcode read
        :return: Corrected barcodes from the first attached round to the last, or None
        """
        barcode, _, _ = self.match_read(read_sequence)
        if barcode is None:
            return None
        return barcode.rounds
