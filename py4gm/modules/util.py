# -*- coding: utf-8 -*-
'''
Small helpers shared by the Py4GMX modules and drivers: titles, rank-0
printing, directories and plain numeric table reading.
'''

import os
from datetime import datetime
from pathlib import Path

import numpy as np

from .errors import DataIOError


def print_title(version='0.9.0', fname='', form='%m/%d/%Y, %H:%M:%S', out=True):
    '''
    Print version, calling file name, and modification date.
    '''
    if len(version) == 0:
        print('No version string given! Not printed to title.')
        tstr = ''
    else:
        ndat = '\n' + 'Date ' + datetime.now().strftime(form)
        tstr = 'Py4GMX Version ' + version + ndat + '\n'

    if len(fname) == 0:
        print('No calling filename given! Not printed to title.')
        fstr = ''
    else:
        fnam = os.path.basename(fname)
        mdat = datetime.fromtimestamp(os.path.getmtime(fname)).strftime(form)
        fstr = fnam + ', modified ' + mdat + '\n'
        fstr = fstr + fname

    title = tstr + fstr

    if out:
        print(title)

    return title


def rprint(comm, *args, **kwargs):
    '''
    Print on rank 0 only.

    ``comm`` may be None (serial run).
    '''
    if comm is None or comm.rank == 0:
        print(*args, **kwargs)


def read_table(file_name, ncols=None, nrows=None, what='table'):
    """
    Read a whitespace separated numeric table.

    Lines starting with ``#`` are skipped. The table is always returned as
    a 2-D float array.

    Parameters
    ----------
    file_name : str or Path
        File to read.
    ncols : int, optional
        Required number of columns.
    nrows : int, optional
        Required number of rows.
    what : str
        Name used in error messages.

    Returns
    -------
    numpy.ndarray
        Array of shape (nrows, ncols).
    """
    p = Path(file_name).expanduser()
    if not p.is_file():
        raise DataIOError(f'Error in opening the {what} file {p}!')

    try:
        table = np.loadtxt(p, comments='#', ndmin=2, dtype=float)
    except ValueError as exc:
        raise DataIOError(f'Problem while reading the {what} file {p}: {exc}') from exc

    if ncols is not None and table.size > 0 and table.shape[1] != ncols:
        raise DataIOError(
            f'The {what} file {p} has {table.shape[1]} columns, {ncols} expected!')
    if nrows is not None and table.shape[0] != nrows:
        raise DataIOError(
            f'The {what} file {p} has {table.shape[0]} records, {nrows} expected!')

    return table


def read_vector(file_name, n=None, what='vector'):
    """
    Read one value per cell from a text file.

    Files in grid format (``X1 X2 Y1 Y2 Z1 Z2 val i j k``, optionally
    preceded by a count line) are accepted as well; the value column is
    taken in that case.
    """
    p = Path(file_name).expanduser()
    if not p.is_file():
        raise DataIOError(f'Error in opening the {what} file {p}!')

    with open(p, 'r') as f:
        lines = [ln.split('#')[0].split() for ln in f]
    lines = [ln for ln in lines if ln]

    # optional count header
    if lines and len(lines[0]) == 1 and len(lines) > 1 and len(lines[1]) == 10:
        lines = lines[1:]

    try:
        if lines and len(lines[0]) == 10:
            vals = np.array([float(ln[6]) for ln in lines])
        else:
            vals = np.array([float(v) for ln in lines for v in ln])
    except (ValueError, IndexError) as exc:
        raise DataIOError(f'Problem while reading the {what} file {p}: {exc}') from exc

    # count line in front of a one-column file
    if n is not None and vals.size == n + 1 and vals[0] == n:
        vals = vals[1:]

    if n is not None and vals.size != n:
        raise DataIOError(
            f'The {what} file {p} holds {vals.size} values, {n} expected!')

    return vals
