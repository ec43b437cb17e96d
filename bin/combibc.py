#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of combibc.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse

import count_features
import demultiplex
from version import __version__

COMMANDS = {
    "to-fastq": demultiplex.CLI,
    "bam-to-count": count_features.CLI,
}


class CLI(argparse.Namespace):
    command: str
    args: list[str]

    _parser = argparse.ArgumentParser(
        prog="combibc",
        description="Demultiplex combinatorial cell barcodes and count aligned reads per cell.",
    )
    _parser.add_argument(
        "command",
        choices=COMMANDS,
        help="to-fastq: identify barcodes and write corrected FASTQ; "
        "bam-to-count: build a cell x feature count matrix from aligned reads",
    )
    _parser.add_argument(
        "args", nargs=argparse.REMAINDER, help="Arguments of the command, see <command> -h"
    )
    _parser.add_argument(
        "--version", action="version", version=f"combibc {__version__}"
    )

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def main(self):
        COMMANDS[self.command](self.args).main()


def main():
    CLI().main()


if __name__ == "__main__":
    main()
