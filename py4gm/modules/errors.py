#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
errors.py
=========

Exception taxonomy of the inversion engine.

- :class:`ConfigError` - inconsistent configuration (counts, keys, values)
- :class:`DataIOError` - missing files, malformed records, premature EOF
- :class:`AllocationError` - memory exhaustion while sizing arrays
- :class:`RankAborted` - raised on ranks released by another rank's abort

All of these are fatal for a distributed run: the driver maps them to
``comm.abort``. Solver non-convergence is *not* an exception, it is
reported through :class:`joint.InversionState`.
"""

from __future__ import annotations


class InversionError(RuntimeError):
    """Base class of all fatal inversion errors."""

    exit_code = 1


class ConfigError(InversionError, ValueError):
    """Configuration or consistency error."""

    exit_code = 2


class DataIOError(InversionError, OSError):
    """File not found, malformed record or premature end of file."""

    exit_code = 3


class AllocationError(InversionError, MemoryError):
    """Array or matrix allocation failed."""

    exit_code = 4


class RankAborted(InversionError):
    """This rank was released because a peer rank aborted the run."""

    exit_code = 5


def check_count(what: str, expected: int, got: int) -> None:
    """Raise :class:`ConfigError` when two counts differ."""
    if int(expected) != int(got):
        raise ConfigError(
            f"The number of {what} differs: expected {int(expected)}, got {int(got)}!"
        )


def exit_code_of(exc: BaseException) -> int:
    """Process exit code for a fatal exception."""
    if isinstance(exc, InversionError):
        return exc.exit_code
    if isinstance(exc, MemoryError):
        return AllocationError.exit_code
    return 1


def allocate(shape, dtype=float, what: str = "array"):
    """Allocate a zero array, mapping :class:`MemoryError` to :class:`AllocationError`."""
    import numpy as np

    try:
        return np.zeros(shape, dtype=dtype)
    except MemoryError as exc:
        raise AllocationError(f"Dynamic memory allocation error for {what} {shape}!") from exc
