# Library of functions shared across the combibc scripts

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of combibc.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import functools
import logging
import uuid


class CombiBCError(Exception):
    pass


class BarcodeTableError(CombiBCError):
    """The barcode reference table is missing columns, malformed, or inconsistent."""


class ReadPairingError(CombiBCError):
    """The R1 and R2 streams did not yield the same number of records."""


class ReadNameError(CombiBCError):
    """An alignment record does not carry a <barcode>_ prefix in its name."""


class OutputError(CombiBCError):
    """An output stream could not be flushed and closed."""


def wrap_exception(
    catch_exc: type[BaseException] | tuple[type[BaseException], ...],
    wrap_exc: type[BaseException],
    *exc_args,
    **exc_kwargs,
):
    """
    Re-raises any `catch_exc` escaping the wrapped function as `wrap_exc`, chained to the original.
    Without explicit `exc_args`, the message of the original exception is carried over.
    """

    def wrapper(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except catch_exc as e:
                raise wrap_exc(*(exc_args or (str(e),)), **exc_kwargs) from e

        return inner

    return wrapper


def logs_runtime(func):
    """
    Logs start and finish times for the wrapped process.
    Will create a logger with a unique ID for each call to the wrapped function
    Pass a logger via the `logger` kwarg to the wrapped function to use that instead
    """
    logger = logging.getLogger(f"{func.__name__}:{uuid.uuid4().int % 1_000_000_000}")

    @functools.wraps(func)
    def inner(*args, **kwargs):
        my_logger: logging.Logger = kwargs.pop("logger", logger)
        my_logger.info("Begin")
        ret = func(*args, **kwargs)
        my_logger.info("Finish")
        return ret

    return inner


def positive_int(value: str) -> int:
    """argparse type for options that only make sense as a count >= 1"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number
