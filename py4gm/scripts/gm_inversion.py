#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''
Joint gravity/magnetic inversion driver.

    gm_inversion.py -p Parfile [--backend serial|threads|mpi] [--ranks N]

With ``--backend mpi`` the script is started by the MPI launcher
(``mpirun -n 4 python gm_inversion.py -p Parfile --backend mpi``); every
process runs it and owns a block of model cells. ``--backend threads``
runs ``--ranks`` in-process ranks instead.

Exit code 0 on success; any error aborts all ranks and returns its non-zero
code (2 configuration, 3 I/O, 4 allocation, 1 otherwise).
'''

import argparse
import inspect
import sys

from py4gm.modules import util as utl
from py4gm.modules.config import InversionConfig, describe
from py4gm.modules.errors import exit_code_of
from py4gm.modules.joint import run_inversion
from py4gm.modules.parallel import get_comm, root_call, run_ranks
from py4gm.modules.version import versionstrg


def _rank_main(comm, parfile, out):
    cfg = root_call(comm, InversionConfig.from_parfile, parfile, out and comm.rank == 0)
    if out and comm.rank == 0:
        describe(cfg)
    return run_inversion(cfg, comm=comm, out=out)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Joint gravity/magnetic inversion.')
    parser.add_argument('-p', '--parfile', required=True, help='Parfile (key = value)')
    parser.add_argument('--backend', default='serial', choices=['serial', 'threads', 'mpi'],
                        help='rank backend')
    parser.add_argument('--ranks', type=int, default=2,
                        help='number of thread ranks (--backend threads)')
    parser.add_argument('-q', '--quiet', action='store_true', help='no console output')
    args = parser.parse_args(argv)
    out = not args.quiet

    version, _ = versionstrg()
    fname = inspect.getfile(inspect.currentframe())

    if args.backend == 'threads':
        if out:
            utl.print_title(version=version, fname=fname, out=True)
        try:
            states = run_ranks(args.ranks, _rank_main, args.parfile, out)
        except Exception as exc:
            print(f'gm_inversion: {type(exc).__name__}: {exc}', file=sys.stderr)
            return exit_code_of(exc)
        state = states[0]
    else:
        comm = get_comm(args.backend)
        if out and comm.rank == 0:
            utl.print_title(version=version, fname=fname, out=True)
        try:
            state = _rank_main(comm, args.parfile, out)
        except Exception as exc:
            print(f'gm_inversion (rank {comm.rank}): {type(exc).__name__}: {exc}',
                  file=sys.stderr)
            comm.abort(exit_code_of(exc))
            return exit_code_of(exc)

    if out:
        print(f'gm_inversion: {state.status}, {state.major} major iterations')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
